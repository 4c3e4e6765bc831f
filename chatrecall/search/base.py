from collections.abc import Awaitable, Callable

import numpy as np

from chatrecall.search.types import SearchFilters, SearchHit

# Capability interfaces the fusion engine is built against. Any async callable
# with the matching signature works: the sqlite store, a remote service or a test fake.

LexicalSearch = Callable[[str, SearchFilters, int], Awaitable[list[SearchHit]]]
VectorSearch = Callable[[np.ndarray, SearchFilters, int], Awaitable[list[SearchHit]]]
EmbedFn = Callable[[str], Awaitable[np.ndarray]]
