from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from chatrecall.server.auth import require_api_key
from chatrecall.server.runtime import get_runtime

router = APIRouter(prefix="/embeddings", tags=["embeddings"], dependencies=[Depends(require_api_key)])


class EmbedRequest(BaseModel):
    limit: int | None = Field(None, ge=1, le=10000)


@router.get("/status")
async def get_embedding_status():
    runtime = get_runtime()
    by_status = await runtime.conversations.count_by_status()
    return {
        "model": runtime.config.embedding_model,
        "total": sum(by_status.values()),
        "completed": by_status.get("completed", 0),
        "pending": by_status.get("pending", 0),
        "failed": by_status.get("failed", 0),
    }


@router.post("/batch")
async def embed_batch(request: EmbedRequest | None = None):
    runtime = get_runtime()
    request = request or EmbedRequest()
    summary = await runtime.index.embed_pending(request.limit or runtime.config.batch_limit)
    return summary.model_dump()
