"""Tests for ladder/agents/context_gatherer.py — evidence-backed answers."""

import pytest

from ladder.agents.context_gatherer import ContextGatherer, derive_queries
from ladder.core.exceptions import SearchError, UnresolvedQuestionError
from tests.conftest import DictSearch


class TestDeriveQueries:
    def test_quoted_terms_first(self):
        queries = derive_queries("Where is `load_config` called from the CLI?")
        assert queries[0] == "load_config"

    def test_file_paths(self):
        assert "ladder/core/config.py" in derive_queries("What does ladder/core/config.py export?")

    def test_identifiers(self):
        queries = derive_queries("Which class implements TaskStore here?")
        assert "TaskStore" in queries

    def test_stopwords_dropped_and_deduped(self):
        queries = derive_queries("Where should retries happen for retries?")
        assert "should" not in queries
        assert [q.lower() for q in queries].count("retries") == 1

    def test_max_queries(self):
        question = "`a1` `b2` `c3` `d4` `e5`"
        assert len(derive_queries(question, max_queries=3)) == 3


class TestResolve:
    def test_all_answered(self):
        search = DictSearch({"paginate": ["app/pages.py:12"]})
        gatherer = ContextGatherer(search, max_new_questions=0)
        answers = gatherer.resolve(["Where is `paginate` defined?"], scope="repo")

        assert len(answers) == 1
        assert answers[0].locator == "app/pages.py:12"
        assert "'paginate' found at app/pages.py:12" in answers[0].summary
        assert search.queries[0] == ("repo", "paginate")

    def test_more_locators_summarized(self):
        search = DictSearch({"paginate": ["a.py:1", "b.py:2", "c.py:3", "d.py:4"]})
        answer = ContextGatherer(search, max_new_questions=0).resolve(["`paginate`?"], ".")[0]
        assert "(+3 more: b.py:2, c.py:3)" in answer.summary

    def test_duplicate_questions_asked_once(self):
        search = DictSearch({"paginate": ["app/pages.py:12"]})
        answers = ContextGatherer(search, max_new_questions=0).resolve(
            ["Where is `paginate`?", "where is `paginate`"], ".",
        )
        assert len(answers) == 1

    def test_unresolved_carries_partial_answers(self):
        search = DictSearch({"paginate": ["app/pages.py:12"]})
        gatherer = ContextGatherer(search, max_new_questions=0)
        with pytest.raises(UnresolvedQuestionError) as exc:
            gatherer.resolve(["Where is `paginate`?", "Who owns `mystery_flag`?"], ".")
        assert exc.value.unresolved == ["Who owns `mystery_flag`?"]
        assert [a.locator for a in exc.value.answers] == ["app/pages.py:12"]

    def test_follow_up_for_located_source_file(self):
        search = DictSearch({
            "paginate": ["app/pages.py:12"],
            "test_pages": ["tests/test_pages.py:1"],
        })
        answers = ContextGatherer(search, max_new_questions=2).resolve(["Where is `paginate`?"], ".")
        assert [a.locator for a in answers] == ["app/pages.py:12", "tests/test_pages.py:1"]
        assert answers[1].question == "Which tests cover `test_pages`?"

    def test_follow_ups_capped(self):
        search = DictSearch({"alpha": ["a.py:1"], "beta": ["b.py:1"], "test_": ["tests/x.py:1"]})
        answers = ContextGatherer(search, max_new_questions=1).resolve(["`alpha`", "`beta`"], ".")
        assert len(answers) == 3

    def test_unanswerable_follow_up_dropped(self):
        search = DictSearch({"paginate": ["app/pages.py:12"]})
        answers = ContextGatherer(search, max_new_questions=2).resolve(["Where is `paginate`?"], ".")
        assert len(answers) == 1

    def test_search_error_tries_next_query(self):
        class _Flaky:
            def __init__(self):
                self.calls = 0

            def search(self, scope, query):
                self.calls += 1
                if self.calls == 1:
                    raise SearchError("index offline")
                return ["found.py:3"]

        answers = ContextGatherer(_Flaky(), max_new_questions=0).resolve(["`first` or `second`?"], ".")
        assert answers[0].locator == "found.py:3"
