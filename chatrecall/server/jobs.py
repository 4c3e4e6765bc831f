import asyncio
from dataclasses import asdict, dataclass
from enum import StrEnum

from chatrecall.logging import get_logger
from chatrecall.relationships.graph import GraphBuilder
from chatrecall.relationships.models import BatchSummary

_logger = get_logger(__name__)


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class JobProgress:
    total: int = 0
    done: int = 0
    status: JobStatus = JobStatus.PENDING


class RelationshipJob:
    """Runs batch relationship building in the background, one run at a time."""

    def __init__(self, builder: GraphBuilder):
        self.builder = builder
        self._progress = JobProgress()
        self._summary: BatchSummary | None = None
        self._error: str | None = None
        self._cancel_requested = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def progress(self) -> JobProgress:
        return self._progress

    def start(self, limit: int, min_similarity: float | None = None) -> bool:
        if self.running:
            return False
        self._cancel_requested = False
        self._summary = None
        self._error = None
        self._progress = JobProgress(status=JobStatus.RUNNING)
        self._task = asyncio.create_task(self._run(limit, min_similarity))
        return True

    def cancel(self) -> bool:
        """Ask the running batch to stop after the conversation in flight."""
        if not self.running:
            return False
        self._cancel_requested = True
        return True

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def wait(self) -> BatchSummary | None:
        if self._task:
            await asyncio.shield(self._task)
        return self._summary

    def _on_progress(self, done: int, total: int) -> None:
        self._progress.done = done
        self._progress.total = total

    async def _run(self, limit: int, min_similarity: float | None) -> None:
        try:
            summary = await self.builder.batch_build(
                limit=limit,
                min_similarity=min_similarity,
                cancel_check=lambda: self._cancel_requested,
                progress_callback=self._on_progress,
            )
            self._summary = summary
            self._progress.status = JobStatus.CANCELLED if summary.cancelled else JobStatus.DONE
        except asyncio.CancelledError:
            self._progress.status = JobStatus.CANCELLED
            raise
        except Exception as e:
            _logger.exception("Relationship batch failed")
            self._error = str(e)
            self._progress.status = JobStatus.ERROR

    def get_status(self) -> dict:
        return {
            **asdict(self._progress),
            "summary": self._summary.model_dump() if self._summary else None,
            "error": self._error,
        }
