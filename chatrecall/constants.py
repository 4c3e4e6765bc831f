# --- Embeddings ---

EMBEDDING_TEXT_LIMIT = 8000
EMBEDDING_BATCH_SIZE = 64  # texts per provider call

# Embedding models (OpenAI): model -> dimension
EMBEDDING_MODELS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


# --- Hybrid Search ---

RRF_K = 60  # reciprocal rank damping constant
RRF_OVERFETCH_FACTOR = 2  # each sub-search fetches limit * factor candidates
LEXICAL_WEIGHT = 0.5
VECTOR_WEIGHT = 0.5
LEXICAL_TIMEOUT = 5.0  # seconds
VECTOR_TIMEOUT = 10.0  # seconds, includes embedding the query
DEFAULT_SEARCH_LIMIT = 20
MAX_SEARCH_LIMIT = 200


# --- Relationship Classification ---

NEAR_DUPLICATE_THRESHOLD = 0.95
REFERENCES_THRESHOLD = 0.85

PROBLEM_KEYWORDS = (
    "error",
    "issue",
    "problem",
    "bug",
    "failed",
    "broken",
    "not working",
    "doesn't work",
    "help",
    "fix",
    "solve",
)

# (affirmative, opposite) regex pairs, matched case-insensitively in both directions
CONTRADICTION_PATTERNS = (
    (r"should use", r"should not use|shouldn't use|avoid"),
    (r"recommended", r"not recommended|deprecated|obsolete"),
    (r"works with", r"doesn't work|incompatible"),
)


# --- Relationship Graph ---

RELATIONSHIP_MIN_SIMILARITY = 0.8
RELATIONSHIP_MAX_NEIGHBORS = 20
RELATED_LOOKUP_MIN_SIMILARITY = 0.7  # stored-edge lookup default
BATCH_LIMIT = 100
BATCH_CONCURRENCY = 1
