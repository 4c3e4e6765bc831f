from chatrecall.search.fusion import FusionEngine, normalize_scores, rrf_merge
from chatrecall.search.index import ConversationIndex
from chatrecall.search.types import FusedResult, FusionResponse, HitSource, SearchFilters, SearchHit

__all__ = [
    "ConversationIndex",
    "FusedResult",
    "FusionEngine",
    "FusionResponse",
    "HitSource",
    "SearchFilters",
    "SearchHit",
    "normalize_scores",
    "rrf_merge",
]
