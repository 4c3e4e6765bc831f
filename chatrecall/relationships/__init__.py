from chatrecall.relationships.classifier import classify
from chatrecall.relationships.graph import GraphBuilder
from chatrecall.relationships.models import (
    BatchSummary,
    ConversationSummary,
    RelatedConversation,
    RelationshipEdge,
    RelationshipStats,
    RelationshipType,
)

__all__ = [
    "BatchSummary",
    "ConversationSummary",
    "GraphBuilder",
    "RelatedConversation",
    "RelationshipEdge",
    "RelationshipStats",
    "RelationshipType",
    "classify",
]
