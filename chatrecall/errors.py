class RecallError(Exception):
    """Base class for retrieval and relationship-mapping errors."""


class InvalidQuery(RecallError):
    """Empty or malformed search input. Caller error, never retried."""


class EmbeddingFailure(RecallError):
    """The embedding call failed or timed out."""


class EmbeddingNotFound(RecallError):
    def __init__(self, conversation_id: str):
        super().__init__(f"No embedding stored for conversation {conversation_id}")
        self.conversation_id = conversation_id


class ConversationNotFound(RecallError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class SubSearchTimeout(RecallError):
    def __init__(self, source: str, timeout: float):
        super().__init__(f"{source} search exceeded {timeout:.1f}s")
        self.source = source
        self.timeout = timeout


class SearchUnavailable(RecallError):
    """Both search backends failed; there is nothing to fuse."""

    def __init__(self, reasons: dict[str, str]):
        detail = ", ".join(f"{source}: {reason}" for source, reason in sorted(reasons.items()))
        super().__init__(f"Search unavailable ({detail})")
        self.reasons = reasons
