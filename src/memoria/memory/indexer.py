"""Keyword and topic extraction for conversation memory.

All functions here are pure: the same text always produces the same
keywords and topics, in the same order.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Mapping

_NON_TOKEN_CHARS = re.compile(r"[^a-z0-9\-_]")

STOP_WORDS: frozenset[str] = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from",
        "has", "have", "he", "in", "is", "it", "its", "of", "on", "or",
        "that", "the", "to", "was", "were", "will", "with", "would",
        "can", "could", "do", "does", "did", "how", "what", "when",
        "where", "which", "who", "why", "this", "these", "those",
        "i", "you", "we", "they", "my", "your", "our", "their",
        "me", "him", "her", "us", "them", "if", "then", "else", "but",
        "not", "no", "yes", "so", "just", "more", "most", "some", "any",
        "all", "also", "than", "only", "very", "too", "now", "here",
        "there", "up", "down", "out", "about", "into", "over", "after",
        "before", "between", "under", "again", "should", "need", "want",
        "like", "get", "make", "know", "think", "see", "use", "used",
        "using", "way", "work", "working", "thing", "please", "thanks",
        "thank", "help", "question", "answer", "example",
    }
)

# A topic is assigned when at least TOPIC_MATCH_THRESHOLD of its keywords
# appear in the text.
TOPIC_MATCH_THRESHOLD = 2

TOPIC_KEYWORDS: dict[str, frozenset[str]] = {
    "security": frozenset({
        "auth", "authentication", "authorization", "jwt", "token", "oauth",
        "password", "encrypt", "hash", "ssl", "tls", "https", "api-key",
        "secret", "credential", "permission", "role", "session", "cookie",
    }),
    "api-design": frozenset({
        "api", "rest", "graphql", "endpoint", "request", "response", "http",
        "get", "post", "put", "delete", "patch", "route", "path", "query",
        "parameter", "header", "body", "status", "swagger", "openapi",
    }),
    "database": frozenset({
        "database", "db", "sql", "nosql", "query", "table", "schema", "index",
        "migration", "postgres", "mysql", "mongodb", "redis", "sqlite", "orm",
        "model", "relation", "join", "transaction",
    }),
    "frontend": frozenset({
        "react", "vue", "angular", "svelte", "html", "css", "javascript",
        "typescript", "component", "state", "props", "hook", "dom", "browser",
        "ui", "ux", "style", "responsive", "mobile",
    }),
    "backend": frozenset({
        "server", "node", "express", "fastify", "middleware", "handler",
        "controller", "service", "repository", "microservice", "monolith",
        "lambda", "serverless", "docker", "kubernetes",
    }),
    "testing": frozenset({
        "test", "unit", "integration", "e2e", "jest", "mocha", "cypress",
        "playwright", "mock", "stub", "fixture", "assertion", "coverage",
        "tdd", "bdd",
    }),
    "devops": frozenset({
        "deploy", "ci", "cd", "pipeline", "build", "release", "docker",
        "container", "kubernetes", "k8s", "aws", "gcp", "azure", "terraform",
        "ansible", "monitoring", "logging",
    }),
    "performance": frozenset({
        "performance", "optimize", "cache", "speed", "latency", "throughput",
        "memory", "cpu", "profiling", "benchmark", "load", "scale",
        "concurrent",
    }),
    "architecture": frozenset({
        "architecture", "design", "pattern", "mvc", "mvvm", "clean",
        "hexagonal", "domain", "layer", "module", "dependency", "injection",
        "solid", "dry", "kiss",
    }),
    "error-handling": frozenset({
        "error", "exception", "catch", "throw", "try", "finally", "debug",
        "log", "trace", "stack", "bug", "fix", "issue", "problem",
    }),
}


def tokenize(text: str) -> list[str]:
    """Split text into lowercase tokens longer than two characters.

    Every character outside ``[a-z0-9-_]`` (after lowercasing) acts as a
    separator.

    Args:
        text: Text to tokenize

    Returns:
        Tokens in the order they appear
    """
    return [word for word in _NON_TOKEN_CHARS.sub(" ", text.lower()).split() if len(word) > 2]


def extract_keywords(text: str, max_keywords: int = 10) -> list[str]:
    """Extract the most frequent non-stop-word tokens.

    Args:
        text: Text to extract keywords from
        max_keywords: Maximum number of keywords to return

    Returns:
        Keywords by descending frequency. Ties keep the order in which the
        tokens were first seen.
    """
    frequencies = Counter(token for token in tokenize(text) if token not in STOP_WORDS)
    # Counter preserves first-seen order and sorted() is stable
    ranked = sorted(frequencies.items(), key=lambda item: item[1], reverse=True)
    return [word for word, _ in ranked[:max_keywords]]


def extract_keywords_from_exchange(question: str, answer: str, max_keywords: int = 10) -> list[str]:
    """Extract keywords from a question/answer pair, weighting the question double."""
    return extract_keywords(f"{question} {question} {answer}", max_keywords)


def extract_topics(text: str, existing_topics: Iterable[str] = ()) -> list[str]:
    """Classify text against the fixed topic taxonomy.

    Args:
        text: Text to analyze
        existing_topics: Topics already assigned; they are kept

    Returns:
        Existing topics followed by newly matched ones, without duplicates
    """
    tokens = set(tokenize(text))
    matched = dict.fromkeys(existing_topics)

    for topic, keywords in TOPIC_KEYWORDS.items():
        if len(tokens & keywords) >= TOPIC_MATCH_THRESHOLD:
            matched.setdefault(topic)

    return list(matched)


def extract_topics_from_exchange(
    question: str, answer: str, existing_topics: Iterable[str] = ()
) -> list[str]:
    """Classify a question/answer pair against the topic taxonomy."""
    return extract_topics(f"{question} {answer}", existing_topics)


def get_topic_suggestions(keywords: Iterable[str]) -> list[str]:
    """Topics whose keyword sets contain any of the given keywords."""
    suggestions: dict[str, None] = {}
    for keyword in keywords:
        for topic, topic_keywords in TOPIC_KEYWORDS.items():
            if keyword in topic_keywords:
                suggestions.setdefault(topic)
    return list(suggestions)


def calculate_keyword_similarity(keywords1: Iterable[str], keywords2: Iterable[str]) -> float:
    """Jaccard similarity between two keyword collections.

    Returns:
        Intersection size over union size, 0.0 when both are empty
    """
    set1, set2 = set(keywords1), set(keywords2)
    union = set1 | set2
    if not union:
        return 0.0
    return len(set1 & set2) / len(union)


def find_keyword_matches(
    query_keywords: Iterable[str], keyword_index: Mapping[str, Iterable[str]]
) -> dict[str, int]:
    """Count, per conversation id, how many query keywords link to it."""
    matches: dict[str, int] = {}
    for keyword in query_keywords:
        for conversation_id in keyword_index.get(keyword, ()):
            matches[conversation_id] = matches.get(conversation_id, 0) + 1
    return matches


def normalize_keywords(keywords: Iterable[str]) -> list[str]:
    """Lowercase, strip and deduplicate keywords, dropping short and stop words."""
    normalized = (k.lower().strip() for k in keywords)
    return list(dict.fromkeys(k for k in normalized if len(k) > 2 and k not in STOP_WORDS))


def generate_summary(text: str, max_words: int = 10) -> str:
    """First ``max_words`` words of text, with ``...`` appended when cut."""
    words = text.split()
    summary = " ".join(words[:max_words])
    return f"{summary}..." if len(words) > max_words else summary
