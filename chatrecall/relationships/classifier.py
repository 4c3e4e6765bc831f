"""Deterministic relationship labelling for a pair of conversations.

The rules form an ordered table: the first predicate that holds decides the
label. A pair can satisfy several rules at once (same project and similarity
above 0.85, say), so the order is part of the contract. Missing text or
topics make the text-based rules fall through instead of raising.
"""

import re
from collections.abc import Callable

from chatrecall.constants import (
    CONTRADICTION_PATTERNS,
    NEAR_DUPLICATE_THRESHOLD,
    PROBLEM_KEYWORDS,
    REFERENCES_THRESHOLD,
)
from chatrecall.relationships.models import ConversationSummary, RelationshipType

Rule = Callable[[ConversationSummary, ConversationSummary, float], bool]

_CONTRADICTIONS = [
    (re.compile(affirmative, re.IGNORECASE), re.compile(opposite, re.IGNORECASE))
    for affirmative, opposite in CONTRADICTION_PATTERNS
]


def is_problem_solving(conv: ConversationSummary) -> bool:
    if not conv.primary_user_text:
        return False
    text = conv.primary_user_text.lower()
    return any(keyword in text for keyword in PROBLEM_KEYWORDS)


def might_contradict(source: ConversationSummary, target: ConversationSummary) -> bool:
    a, b = source.primary_user_text, target.primary_user_text
    if not a or not b:
        return False
    for affirmative, opposite in _CONTRADICTIONS:
        if affirmative.search(a) and opposite.search(b):
            return True
        if opposite.search(a) and affirmative.search(b):
            return True
    return False


def _near_duplicate(source: ConversationSummary, target: ConversationSummary, similarity: float) -> bool:
    return similarity > NEAR_DUPLICATE_THRESHOLD


def _same_project(source: ConversationSummary, target: ConversationSummary, similarity: float) -> bool:
    return bool(source.project) and bool(target.project) and source.project == target.project


def _same_problem(source: ConversationSummary, target: ConversationSummary, similarity: float) -> bool:
    return is_problem_solving(source) and is_problem_solving(target) and bool(source.topics & target.topics)


def _contradiction(source: ConversationSummary, target: ConversationSummary, similarity: float) -> bool:
    return might_contradict(source, target)


def _references(source: ConversationSummary, target: ConversationSummary, similarity: float) -> bool:
    return similarity > REFERENCES_THRESHOLD


RULES: list[tuple[Rule, RelationshipType]] = [
    (_near_duplicate, RelationshipType.NEAR_DUPLICATE),
    (_same_project, RelationshipType.BUILDS_ON),
    (_same_problem, RelationshipType.SOLVES_SAME_PROBLEM),
    (_contradiction, RelationshipType.CONTRADICTS),
    (_references, RelationshipType.REFERENCES),
]


def classify(
    source: ConversationSummary,
    target: ConversationSummary,
    similarity_score: float,
) -> RelationshipType:
    for predicate, label in RULES:
        if predicate(source, target, similarity_score):
            return label
    return RelationshipType.RELATED


def builds_on_base(source: ConversationSummary, target: ConversationSummary) -> str | None:
    """The earlier of two same-project conversations, i.e. the one the other builds on."""
    if source.started_at is None or target.started_at is None or source.started_at == target.started_at:
        return None
    return source.id if source.started_at < target.started_at else target.id
