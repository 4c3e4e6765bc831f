from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from chatrecall.constants import DEFAULT_SEARCH_LIMIT, MAX_SEARCH_LIMIT
from chatrecall.errors import InvalidQuery, SearchUnavailable
from chatrecall.search.types import SearchFilters
from chatrecall.server.auth import require_api_key
from chatrecall.server.runtime import get_runtime

router = APIRouter(tags=["search"], dependencies=[Depends(require_api_key)])


class SearchRequest(BaseModel):
    query: str = Field(..., max_length=2000)
    filters: SearchFilters | None = None
    limit: int = Field(DEFAULT_SEARCH_LIMIT, ge=1, le=MAX_SEARCH_LIMIT)


@router.post("/search")
async def search(request: SearchRequest):
    runtime = get_runtime()
    try:
        response = await runtime.index.search(request.query, request.filters, request.limit)
    except InvalidQuery as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SearchUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    summaries = await runtime.conversations.get_summaries([r.record_id for r in response.results])

    results = []
    for r in response.results:
        summary = summaries.get(r.record_id)
        results.append(
            {
                "id": r.record_id,
                "fused_score": r.fused_score,
                "contributing_sources": sorted(r.contributing_sources),
                "lexical_rank": r.lexical_rank,
                "lexical_score": r.lexical_score,
                "vector_rank": r.vector_rank,
                "vector_score": r.vector_score,
                "project": summary.project if summary else None,
                "platform": summary.platform if summary else None,
                "started_at": r.started_at.isoformat() if r.started_at else None,
            }
        )

    return {
        "results": results,
        "total": len(results),
        "partial": response.partial,
        "degraded": {str(k): v for k, v in response.degraded.items()},
    }
