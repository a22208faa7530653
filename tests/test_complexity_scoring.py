"""Tests for ladder/orchestrator/complexity.py — Task complexity scoring."""

from ladder.orchestrator.complexity import (
    ARCHITECTURAL_SCORE,
    HIGH_COMPLEXITY_KEYWORDS,
    LOW_COMPLEXITY_KEYWORDS,
    MEDIUM_COMPLEXITY_KEYWORDS,
    complexity_score,
    is_architecturally_complex,
)


# ---------------------------------------------------------------------------
# Keyword score
# ---------------------------------------------------------------------------

def test_zero_for_simple_text():
    assert complexity_score("Hello", "world") == 0


def test_low_keywords_pull_score_down():
    assert complexity_score("Fix typo in readme") == -3


def test_single_medium_keyword():
    assert complexity_score("Schema work", "Revise the schema definitions") == 1


def test_two_medium_keywords():
    assert complexity_score("Database query") == 2


def test_high_keyword_weighs_three():
    assert complexity_score("Refactor the api") == 4


def test_multiple_high_keywords():
    assert complexity_score("Database migration for distributed cache") >= 6


def test_scoring_is_case_insensitive():
    assert complexity_score("REFACTOR") == complexity_score("refactor") == 3


# ---------------------------------------------------------------------------
# Description length
# ---------------------------------------------------------------------------

def test_long_description_adds_one():
    assert complexity_score("x", "word " * 60) == 1


def test_very_long_description_adds_two():
    assert complexity_score("x", "word " * 120) == 2


# ---------------------------------------------------------------------------
# Architectural complexity
# ---------------------------------------------------------------------------

def test_architecturally_complex_at_default_threshold():
    assert is_architecturally_complex("Refactor the api")
    assert not is_architecturally_complex("Database query")
    assert not is_architecturally_complex("Fix typo in readme")


def test_custom_threshold():
    assert not is_architecturally_complex("Refactor the api", threshold=10)
    assert is_architecturally_complex("Database query", threshold=2)


def test_default_threshold():
    assert ARCHITECTURAL_SCORE == 4


def test_keyword_lists_do_not_overlap():
    high, medium, low = set(HIGH_COMPLEXITY_KEYWORDS), set(MEDIUM_COMPLEXITY_KEYWORDS), set(LOW_COMPLEXITY_KEYWORDS)
    assert not (high & medium)
    assert not (high & low)
    assert not (medium & low)
