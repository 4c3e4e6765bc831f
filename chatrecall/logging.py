import logging
import sys

import structlog

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("LiteLLM", "httpx", "aiosqlite", "mcp.server.lowlevel.server")

shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="%H:%M:%S"),
]


def _renderer(json_output: bool):
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    """Route all chatrecall logs to stderr; stdout stays free for the MCP stdio transport."""
    level_no = logging.getLevelNamesMapping().get(level.upper())
    if level_no is None:
        raise ValueError(f"Unknown log level: {level}")

    structlog.configure(
        processors=[*shared_processors, _renderer(json_output)],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None):
    return structlog.get_logger(name or "chatrecall")


def uvicorn_log_config(json_output: bool = False) -> dict:
    formatter = {
        "()": structlog.stdlib.ProcessorFormatter,
        "processor": _renderer(json_output),
        "foreign_pre_chain": shared_processors,
    }
    handler = {"formatter": "default", "class": "logging.StreamHandler", "stream": "ext://sys.stderr"}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": formatter},
        "handlers": {"default": handler},
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"level": "INFO"},
            "uvicorn.access": {"handlers": ["default"], "level": "INFO", "propagate": False},
        },
    }
