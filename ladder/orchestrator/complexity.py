"""Task complexity scoring.

Estimates task complexity from the task text using keyword heuristics.
Does NOT use LLM calls; this is a fast, deterministic classifier.

Backlog entries that do not say whether they are architecturally complex
are classified here; complex tasks skip the cheapest tier.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("ladder.orchestrator.complexity")


# Complexity signal keywords
HIGH_COMPLEXITY_KEYWORDS = [
    "migration", "refactor", "architecture", "redesign", "system",
    "integration", "concurrent", "async", "distributed", "multi-",
    "security", "authentication", "authorization", "encryption",
    "performance", "optimization", "caching", "scaling",
]

MEDIUM_COMPLEXITY_KEYWORDS = [
    "api", "endpoint", "database", "query", "model", "schema",
    "validation", "error handling", "logging", "configuration",
    "testing", "coverage", "fixture", "middleware",
]

LOW_COMPLEXITY_KEYWORDS = [
    "add", "update", "fix", "typo", "rename", "move", "comment",
    "documentation", "readme", "style", "format", "lint",
]

# Minimum composite score that counts as architecturally complex
ARCHITECTURAL_SCORE = 4


def complexity_score(title: str, description: str = "") -> int:
    """Composite keyword score for a task's title and description."""
    combined = f"{title} {description}".lower()
    word_count = len(combined.split())

    high_hits = sum(1 for kw in HIGH_COMPLEXITY_KEYWORDS if kw in combined)
    medium_hits = sum(1 for kw in MEDIUM_COMPLEXITY_KEYWORDS if kw in combined)
    low_hits = sum(1 for kw in LOW_COMPLEXITY_KEYWORDS if kw in combined)

    # Description length is a signal
    desc_length_score = 0
    if word_count > 100:
        desc_length_score = 2
    elif word_count > 50:
        desc_length_score = 1

    return (high_hits * 3) + (medium_hits * 1) + desc_length_score - (low_hits * 1)


def is_architecturally_complex(
    title: str,
    description: str = "",
    threshold: int = ARCHITECTURAL_SCORE,
) -> bool:
    score = complexity_score(title, description)
    logger.debug("Task '%s' complexity score=%d (threshold %d)", title[:40], score, threshold)
    return score >= threshold
