from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrecall import __version__
from chatrecall.config import get_config
from chatrecall.logging import configure_logging
from chatrecall.server.auth import require_api_key
from chatrecall.server.routers.embeddings import router as embeddings_router
from chatrecall.server.routers.relationships import router as relationships_router
from chatrecall.server.routers.search import router as search_router
from chatrecall.server.runtime import get_runtime, get_runtime_async, reset_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    config = get_config()
    configure_logging(config.log_level, config.log_json)
    await get_runtime_async()
    yield
    await reset_runtime()


app = FastAPI(
    title="chatrecall",
    description="Hybrid search and relationship mapping over AI conversation history",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(search_router)
app.include_router(relationships_router)
app.include_router(embeddings_router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/status", dependencies=[Depends(require_api_key)])
async def status():
    return await get_runtime().get_status()
