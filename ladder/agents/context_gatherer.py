"""Context gatherer: grounds a failed attempt's open questions in evidence.

Each question becomes a ranked list of search queries; the first query that
returns evidence answers it. Questions that no query can ground are
reported through UnresolvedQuestionError together with the answers that
were grounded, so callers keep them open instead of inventing answers.

The gatherer may add follow-up questions of its own (tests covering a file
it located), capped at ``max_new_questions`` per call. Unanswerable
follow-ups are dropped silently since nobody asked them.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from typing import Iterable, Optional

from ladder.core.exceptions import SearchError, UnresolvedQuestionError
from ladder.core.models import Answer
from ladder.core.protocols import EvidenceSearch
from ladder.orchestrator.escalation import normalize_question

logger = logging.getLogger("ladder.agents.context_gatherer")

_QUOTED = re.compile(r"`([^`]+)`|\"([^\"]+)\"|(?<!\w)'([^'\s][^']*[^'\s])'(?!\w)")
_FILE_PATH = re.compile(
    r"(?:[\w.-]+/)*[\w.-]+\.(?:py|pyi|js|jsx|ts|tsx|rs|go|java|rb|md|yaml|yml|json|toml|sql|sh|cfg|ini)\b"
)
_IDENTIFIER = re.compile(r"\b(?:[a-z]+_[a-z0-9_]+|[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]+)+|[a-z]+[A-Z]\w*)\b")
_WORD = re.compile(r"[A-Za-z][A-Za-z0-9_-]{3,}")

STOPWORDS = {
    "what", "which", "where", "when", "does", "should", "would", "could",
    "there", "their", "this", "that", "these", "those", "with", "from",
    "into", "have", "about", "other", "than", "then", "them", "they",
    "used", "uses", "using", "need", "needs", "still", "also", "being",
    "file", "files", "code", "function", "method", "class", "value",
    "expected", "behaviour", "behavior", "correct", "right", "currently",
}


def derive_queries(question: str, max_queries: int = 4) -> list[str]:
    """Turn a question into search queries, most specific first."""
    ranked: list[str] = []

    for match in _QUOTED.finditer(question):
        term = next(g for g in match.groups() if g)
        ranked.append(term.strip())
    ranked.extend(m.group(0) for m in _FILE_PATH.finditer(question))
    ranked.extend(m.group(0) for m in _IDENTIFIER.finditer(question))

    words = [w for w in _WORD.findall(question) if w.lower() not in STOPWORDS]
    ranked.extend(sorted(words, key=len, reverse=True)[:2])

    seen: set[str] = set()
    queries: list[str] = []
    for query in ranked:
        key = query.lower()
        if query and key not in seen:
            seen.add(key)
            queries.append(query)
    return queries[:max_queries]


class ContextGatherer:
    """Resolves open questions to evidence-backed answers.

    Injected dependencies:
        search: EvidenceSearch used for every query.
    """

    def __init__(
        self,
        search: EvidenceSearch,
        max_new_questions: int = 2,
        max_queries_per_question: int = 4,
    ):
        self.search = search
        self.max_new_questions = max_new_questions
        self.max_queries_per_question = max_queries_per_question

    def resolve(self, questions: Iterable[str], scope: str) -> list[Answer]:
        """Answer every question from evidence in ``scope``.

        Returns:
            Answers for all asked questions plus any grounded follow-ups.

        Raises:
            UnresolvedQuestionError: If any asked question has no evidence.
                The error carries the grounded answers and every unresolved
                question.
        """
        answers: list[Answer] = []
        unresolved: list[str] = []
        asked: set[str] = set()

        for question in questions:
            key = normalize_question(question)
            if not key or key in asked:
                continue
            asked.add(key)
            answer = self._answer(question, scope)
            if answer is None:
                unresolved.append(question)
            else:
                answers.append(answer)

        for follow_up in self._follow_up_questions(answers, asked):
            answer = self._answer(follow_up, scope)
            if answer is not None:
                answers.append(answer)
            else:
                logger.debug("Dropping unresolved follow-up: %s", follow_up)

        logger.info(
            "Resolved %d question(s), %d unresolved, scope=%s",
            len(answers), len(unresolved), scope,
        )
        if unresolved:
            raise UnresolvedQuestionError(unresolved[0], unresolved=unresolved, answers=answers)
        return answers

    def _answer(self, question: str, scope: str) -> Optional[Answer]:
        for query in derive_queries(question, self.max_queries_per_question):
            try:
                locators = self.search.search(scope, query)
            except SearchError as e:
                logger.warning("Evidence search failed for '%s': %s", query, e)
                continue
            if not locators:
                continue
            locator = locators[0]
            snippet = self._snippet(locator)
            summary = f"'{query}' found at {locator}"
            if snippet:
                summary += f": {snippet}"
            if len(locators) > 1:
                summary += f" (+{len(locators) - 1} more: {', '.join(locators[1:3])})"
            return Answer(question=question, locator=locator, summary=summary)
        return None

    def _snippet(self, locator: str) -> str:
        snippet = getattr(self.search, "snippet", None)
        return snippet(locator) if callable(snippet) else ""

    def _follow_up_questions(self, answers: list[Answer], asked: set[str]) -> list[str]:
        """Ask for the tests covering each located source file."""
        follow_ups: list[str] = []
        for answer in answers:
            if len(follow_ups) >= self.max_new_questions:
                break
            if "://" in answer.locator:
                continue
            path = answer.locator.rsplit(":", 1)[0]
            stem = PurePosixPath(path).stem
            if not stem or stem.startswith("test_"):
                continue
            question = f"Which tests cover `test_{stem}`?"
            key = normalize_question(question)
            if key in asked:
                continue
            asked.add(key)
            follow_ups.append(question)
        return follow_ups
