"""Ranking of indexed conversations against a query, and context formatting.

Scores combine three parts:

- keyword match: fraction of the query's keywords that link to the conversation
- topic bonus: TOPIC_BONUS for every topic shared with the query
- recency bonus: ``recency_boost * (1 - position / len(recent))`` for
  conversations that already scored and appear in the recent list

Scores are not capped at 1.0.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace
from typing import Any

from memoria.memory.indexer import (
    calculate_keyword_similarity,
    extract_keywords,
    extract_topics,
    find_keyword_matches,
)
from memoria.memory.models import Conversation, Exchange, MemoryIndex

TOPIC_BONUS = 0.3
RELEVANCE_WEIGHT = 0.5
SEARCH_MIN_SCORE = 0.05

CONTEXT_HEADER = "--- Relevant Past Conversations ---\n"
CONTEXT_FOOTER = "--- End Past Conversations ---\n"
ELLIPSIS = "...\n"
CHARS_PER_TOKEN = 4
FRAME_TOKENS = math.ceil(len(CONTEXT_HEADER + CONTEXT_FOOTER) / CHARS_PER_TOKEN)

_SKIP_PATTERNS = [
    re.compile(r"^(hi|hello|hey|thanks|thank you|bye|goodbye)[\s!.]*$", re.IGNORECASE),
    re.compile(r"^(yes|no|ok|okay|sure|great)[\s!.]*$", re.IGNORECASE),
    re.compile(r"^what('s| is) your name", re.IGNORECASE),
    re.compile(r"^who are you", re.IGNORECASE),
    re.compile(r"^are you (an? )?(ai|bot|assistant)", re.IGNORECASE),
]


@dataclass
class RetrievalMatch:
    """A conversation that scored against a query.

    Attributes:
        id: Conversation ID
        score: Final relevance score
        summary: Short summary from the index
        path: File path relative to the instance directory
        date: Creation date (YYYY-MM-DD), if known from the recent list
        keywords: Conversation keywords, if known
        topics: Conversation topics, filled in once the body is loaded
        exchanges: Conversation exchanges, filled in once the body is loaded
        relevance_boost: Best per-exchange similarity from rank_by_relevance
    """

    id: str
    score: float
    summary: str = ""
    path: str = ""
    date: str = ""
    keywords: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    exchanges: list[Exchange] = field(default_factory=list)
    relevance_boost: float | None = None

    def with_conversation(self, conversation: Conversation) -> "RetrievalMatch":
        """Copy of this match carrying the conversation body."""
        return replace(
            self,
            exchanges=list(conversation.exchanges),
            topics=list(conversation.topics),
            keywords=self.keywords or list(conversation.keywords),
        )

    def to_dict(self) -> dict[str, Any]:
        """Summary representation, without the exchanges."""
        data: dict[str, Any] = {
            "id": self.id,
            "score": round(self.score, 4),
            "summary": self.summary,
            "path": self.path,
            "date": self.date,
            "keywords": list(self.keywords),
        }
        if self.topics:
            data["topics"] = list(self.topics)
        if self.relevance_boost is not None:
            data["relevance_boost"] = round(self.relevance_boost, 4)
        return data


def _sort_key(match: RetrievalMatch) -> tuple[float, str]:
    # Highest score first, then by id so equal scores have a stable order
    return (-match.score, match.id)


def find_relevant_conversations(
    question: str,
    index: MemoryIndex,
    max_results: int = 3,
    min_score: float = 0.1,
    recency_boost: float = 0.1,
) -> list[RetrievalMatch]:
    """Score indexed conversations against a question.

    Args:
        question: The incoming question
        index: Index to search
        max_results: Maximum matches to return
        min_score: Matches scoring below this are dropped
        recency_boost: Largest recency bonus, given to the most recent conversation

    Returns:
        Matches sorted by descending score
    """
    query_keywords = extract_keywords(question)
    query_topics = set(extract_topics(question))

    scores: dict[str, float] = {}
    info: dict[str, RetrievalMatch] = {}

    if query_keywords:
        for conversation_id, count in find_keyword_matches(query_keywords, index.keywords).items():
            scores[conversation_id] = count / len(query_keywords)

    for topic, entries in index.topics.items():
        if topic not in query_topics:
            continue
        for entry in entries:
            scores[entry.id] = scores.get(entry.id, 0.0) + TOPIC_BONUS
            info.setdefault(entry.id, RetrievalMatch(id=entry.id, score=0.0, summary=entry.summary, path=entry.path))

    total_recent = len(index.recent)
    for position, entry in enumerate(index.recent):
        if entry.id in scores:
            scores[entry.id] += recency_boost * (1 - position / total_recent)
        # Recent entries carry the most complete info
        info[entry.id] = RetrievalMatch(
            id=entry.id,
            score=0.0,
            summary=entry.summary,
            path=entry.path,
            date=entry.date,
            keywords=list(entry.keywords),
        )

    ranked = [
        replace(info[conversation_id], score=score) if conversation_id in info
        else RetrievalMatch(id=conversation_id, score=score)
        for conversation_id, score in scores.items()
        if score >= min_score
    ]
    ranked.sort(key=_sort_key)
    return ranked[:max_results]


def rank_by_relevance(
    matches: list[RetrievalMatch],
    question: str,
    conversations: list[Conversation],
) -> list[RetrievalMatch]:
    """Re-rank matches using the loaded conversation bodies.

    Each match gains RELEVANCE_WEIGHT times the best keyword similarity
    between the question and any single exchange of its conversation.
    Matches whose conversation is not supplied keep their score.
    """
    question_keywords = extract_keywords(question)
    by_id = {c.id: c for c in conversations}

    reranked: list[RetrievalMatch] = []
    for match in matches:
        conversation = by_id.get(match.id)
        if conversation is None:
            reranked.append(match)
            continue

        best = 0.0
        for exchange in conversation.exchanges:
            exchange_keywords = extract_keywords(f"{exchange.question} {exchange.answer}")
            best = max(best, calculate_keyword_similarity(question_keywords, exchange_keywords))

        reranked.append(replace(match, score=match.score + best * RELEVANCE_WEIGHT, relevance_boost=best))

    reranked.sort(key=_sort_key)
    return reranked


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def format_context_for_injection(matches: list[RetrievalMatch], max_tokens: int = 2000) -> str:
    """Render matched conversations as a bounded Q/A block.

    The header and footer count against ``max_tokens``. Exchanges are added
    in order until the next one would exceed the budget. If room remains,
    that exchange is cut to fit, ellipsis included. Nothing more is added
    once 90% of the budget is used.

    Args:
        matches: Matches with exchanges loaded
        max_tokens: Token budget, estimated at four characters per token

    Returns:
        Formatted context, or "" when there are no matches
    """
    if not matches:
        return ""

    parts = [CONTEXT_HEADER]
    used = FRAME_TOKENS
    exhausted = False

    for match in matches:
        for exchange in match.exchanges:
            text = f"Q: {exchange.question}\nA: {exchange.answer}\n\n"
            cost = estimate_tokens(text)

            if used + cost > max_tokens:
                remaining = max_tokens - used
                if remaining * CHARS_PER_TOKEN > len(ELLIPSIS):
                    parts.append(text[: remaining * CHARS_PER_TOKEN - len(ELLIPSIS)].rstrip() + ELLIPSIS)
                exhausted = True
                break

            parts.append(text)
            used += cost

        if exhausted or used >= max_tokens * 0.9:
            break

    parts.append(CONTEXT_FOOTER)
    return "".join(parts)


def should_retrieve_context(question: str) -> bool:
    """Decide whether a question is worth enriching with past conversations.

    Very short questions, greetings and questions about the assistant
    itself are answered without history.
    """
    text = question.strip()
    if len(text) < 10:
        return False
    return not any(pattern.search(text) for pattern in _SKIP_PATTERNS)


def search_conversations(query: str, index: MemoryIndex, limit: int = 10) -> list[dict[str, Any]]:
    """Keyword search over the index for explicit user searches.

    Uses a lower score threshold than context retrieval. A query without
    any keywords returns the most recent conversations instead.

    Returns:
        Conversation summaries
    """
    if not extract_keywords(query):
        return [entry.to_dict() for entry in index.recent[:limit]]

    matches = find_relevant_conversations(query, index, max_results=limit, min_score=SEARCH_MIN_SCORE)
    return [match.to_dict() for match in matches]


def create_context_summary(matches: list[RetrievalMatch]) -> str:
    """One-line description of the context being used, for logs."""
    if not matches:
        return "No relevant past conversations found."

    topics: dict[str, None] = {}
    keywords: dict[str, None] = {}
    for match in matches:
        keywords.update(dict.fromkeys(match.keywords))
        topics.update(dict.fromkeys(match.topics))

    parts = []
    if topics:
        parts.append(f"Topics: {', '.join(list(topics)[:3])}")
    if keywords:
        parts.append(f"Keywords: {', '.join(list(keywords)[:5])}")

    return f"Found {len(matches)} relevant conversation(s). {'. '.join(parts)}".rstrip()
