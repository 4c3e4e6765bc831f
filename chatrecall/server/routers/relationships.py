from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from chatrecall.constants import RELATED_LOOKUP_MIN_SIMILARITY
from chatrecall.errors import ConversationNotFound, EmbeddingNotFound
from chatrecall.server.auth import require_api_key
from chatrecall.server.runtime import get_runtime

router = APIRouter(tags=["relationships"], dependencies=[Depends(require_api_key)])


class BuildRequest(BaseModel):
    min_similarity: float | None = Field(None, ge=0.0, le=1.0)
    max_neighbors: int | None = Field(None, ge=1, le=100)


class BatchRequest(BaseModel):
    limit: int | None = Field(None, ge=1, le=10000)
    min_similarity: float | None = Field(None, ge=0.0, le=1.0)


@router.get("/conversations/{conversation_id}/related")
async def get_related(conversation_id: str, min_similarity: float = RELATED_LOOKUP_MIN_SIMILARITY):
    runtime = get_runtime()
    if await runtime.conversations.get_summary(conversation_id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    related = await runtime.relationships.related(conversation_id, min_similarity)
    return {"related": [r.model_dump(mode="json") for r in related]}


@router.post("/conversations/{conversation_id}/relationships")
async def build_relationships(conversation_id: str, request: BuildRequest | None = None):
    runtime = get_runtime()
    request = request or BuildRequest()
    try:
        edges = await runtime.graph.build_relationships(
            conversation_id,
            min_similarity=request.min_similarity,
            max_neighbors=request.max_neighbors,
        )
    except (ConversationNotFound, EmbeddingNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {"edges": [e.model_dump(mode="json") for e in edges], "total": len(edges)}


@router.post("/relationships/batch")
async def start_batch(request: BatchRequest | None = None):
    runtime = get_runtime()
    request = request or BatchRequest()
    started = runtime.job.start(
        limit=request.limit or runtime.config.batch_limit,
        min_similarity=request.min_similarity,
    )
    if not started:
        raise HTTPException(status_code=409, detail="Relationship batch already running")
    return {"status": "started"}


@router.get("/relationships/batch")
async def get_batch_status():
    return get_runtime().job.get_status()


@router.delete("/relationships/batch")
async def cancel_batch():
    runtime = get_runtime()
    if not runtime.job.cancel():
        raise HTTPException(status_code=409, detail="No relationship batch running")
    return {"status": "cancelling"}


@router.get("/relationships/stats")
async def get_stats():
    stats = await get_runtime().relationships.stats()
    return stats.model_dump()
