"""Tests for context budget trimming."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import pytest

from promptbox.core.arguments import FileArgument
from promptbox.core.config import ArrayPriority, ContextPolicy, KeepSide
from promptbox.core.context import ContextBudgetTrimmer, cut_text, trim_array


class CharTokenizer:
    """One token per character keeps the arithmetic readable."""

    def count(self, text: str) -> int:
        return len(text)


def render_doc(values: Mapping[str, Any]) -> str:
    return f"Q:{values['doc']}"


def render_joined(values: Mapping[str, Any]) -> str:
    return "".join(str(item) for item in values["files"])


@pytest.fixture
def trimmer() -> ContextBudgetTrimmer:
    return ContextBudgetTrimmer(CharTokenizer())


class TestCutText:
    def test_keep_end_removes_prefix(self) -> None:
        assert cut_text("abcdef", 2, KeepSide.END) == "cdef"

    def test_keep_start_removes_suffix(self) -> None:
        assert cut_text("abcdef", 2, KeepSide.START) == "abcd"

    def test_bounds(self) -> None:
        assert cut_text("abc", 0, KeepSide.END) == "abc"
        assert cut_text("abc", 10, KeepSide.START) == ""


class TestBudget:
    def test_reserve_and_fixed_tokens(self) -> None:
        policy = ContextPolicy(limit=100, reserve_output=10)

        assert ContextBudgetTrimmer.budget(policy, fixed_tokens=20) == 70

    def test_known_limit_is_fallback(self) -> None:
        assert ContextBudgetTrimmer.budget(ContextPolicy(reserve_output=0), known_limit=50) == 50
        assert ContextBudgetTrimmer.budget(ContextPolicy(limit=30, reserve_output=0), known_limit=50) == 30

    def test_no_limit(self) -> None:
        assert ContextBudgetTrimmer.budget(ContextPolicy()) is None


class TestWithinBudget:
    def test_fitting_prompt_is_untouched(self, trimmer: ContextBudgetTrimmer) -> None:
        arguments = {"doc": "short"}
        policy = ContextPolicy(limit=100, reserve_output=0, trim_args=("doc",))

        result = trimmer.trim(arguments, policy, render_doc)

        assert result.arguments is arguments
        assert result.prompt == "Q:short"
        assert not result.trimmed

    def test_no_limit_skips_trimming(self, trimmer: ContextBudgetTrimmer) -> None:
        arguments = {"doc": "x" * 10_000}

        result = trimmer.trim(arguments, ContextPolicy(trim_args=("doc",)), render_doc)

        assert result.arguments is arguments
        assert result.target is None
        assert not result.over_budget


class TestScalarTrimming:
    def test_keep_start_retains_prefix(self, trimmer: ContextBudgetTrimmer) -> None:
        doc = "abcdefghij" * 5
        policy = ContextPolicy(limit=30, reserve_output=0, keep=KeepSide.START, trim_args=("doc",))

        result = trimmer.trim({"doc": doc}, policy, render_doc)

        assert result.arguments["doc"] == doc[:28]
        assert result.tokens == 30
        assert not result.over_budget

    def test_keep_end_retains_suffix(self, trimmer: ContextBudgetTrimmer) -> None:
        doc = "abcdefghij" * 5
        policy = ContextPolicy(limit=30, reserve_output=0, trim_args=("doc",))

        result = trimmer.trim({"doc": doc}, policy, render_doc)

        assert result.arguments["doc"] == doc[-28:]

    def test_file_argument_keeps_metadata(self, trimmer: ContextBudgetTrimmer) -> None:
        doc = FileArgument(filename="notes.txt", path="docs/notes.txt", contents="n" * 40)
        policy = ContextPolicy(limit=12, reserve_output=0, trim_args=("doc",))

        result = trimmer.trim({"doc": doc}, policy, render_doc)

        trimmed = result.arguments["doc"]
        assert isinstance(trimmed, FileArgument)
        assert trimmed.filename == "notes.txt"
        assert trimmed.contents == "n" * 10

    def test_arguments_consumed_in_listed_order(self, trimmer: ContextBudgetTrimmer) -> None:
        def render(values: Mapping[str, Any]) -> str:
            return values["a"] + values["b"]

        arguments = {"a": "a" * 10, "b": "b" * 10}
        policy = ContextPolicy(limit=15, reserve_output=0, trim_args=("a", "b"))

        result = trimmer.trim(arguments, policy, render)
        assert result.arguments["a"] == "a" * 5
        assert result.arguments["b"] is arguments["b"]

        deeper = trimmer.trim(arguments, policy.model_copy(update={"limit": 5}), render)
        assert deeper.arguments["a"] == ""
        assert deeper.arguments["b"] == "b" * 5

    def test_untrimmed_arguments_pass_through(self, trimmer: ContextBudgetTrimmer) -> None:
        def render(values: Mapping[str, Any]) -> str:
            return values["title"] + values["doc"]

        policy = ContextPolicy(limit=15, reserve_output=0, trim_args=("doc",))

        result = trimmer.trim({"title": "T" * 5, "doc": "d" * 20}, policy, render)

        assert result.arguments["title"] == "T" * 5
        assert result.arguments["doc"] == "d" * 10


class TestArrayTrimming:
    def test_priority_first_drops_trailing_elements(self, trimmer: ContextBudgetTrimmer) -> None:
        files = ["a" * 10, "b" * 10, "c" * 10]
        policy = ContextPolicy(limit=15, reserve_output=0, trim_args=("files",))

        result = trimmer.trim({"files": files}, policy, render_joined)

        assert result.arguments["files"] == ["a" * 10, "b" * 5]

    def test_priority_last_drops_leading_elements(self, trimmer: ContextBudgetTrimmer) -> None:
        files = ["a" * 10, "b" * 10, "c" * 10]
        policy = ContextPolicy(
            limit=15, reserve_output=0, trim_args=("files",), array_priority=ArrayPriority.LAST
        )

        result = trimmer.trim({"files": files}, policy, render_joined)

        assert result.arguments["files"] == ["b" * 5, "c" * 10]

    def test_priority_equal_shaves_largest(self, trimmer: ContextBudgetTrimmer) -> None:
        files = ["a" * 12, "b" * 8, "c" * 4]
        policy = ContextPolicy(
            limit=16, reserve_output=0, trim_args=("files",), array_priority=ArrayPriority.EQUAL
        )

        result = trimmer.trim({"files": files}, policy, render_joined)

        assert [len(item) for item in result.arguments["files"]] == [6, 6, 4]

    def test_trim_array_reports_removed(self) -> None:
        items, removed = trim_array(["xx", "yyyy"], 5, KeepSide.START, ArrayPriority.FIRST)

        assert items == ["x"]
        assert removed == 5

    def test_non_text_items_are_left_alone(self, trimmer: ContextBudgetTrimmer) -> None:
        policy = ContextPolicy(limit=3, reserve_output=0, trim_args=("files",))

        result = trimmer.trim({"files": [12345, 67890]}, policy, render_joined)

        assert result.arguments["files"] == [12345, 67890]
        assert result.over_budget


class TestPasses:
    def test_rerenders_until_within_budget(self, trimmer: ContextBudgetTrimmer) -> None:
        def render_half(values: Mapping[str, Any]) -> str:
            doc = values["doc"]
            return doc[: len(doc) // 2]

        policy = ContextPolicy(limit=20, reserve_output=0, trim_args=("doc",))

        result = trimmer.trim({"doc": "z" * 50}, policy, render_half)

        assert result.tokens <= 20
        assert result.passes > 1

    def test_pass_count_is_bounded(self) -> None:
        def render_half(values: Mapping[str, Any]) -> str:
            doc = values["doc"]
            return doc[: len(doc) // 2]

        trimmer = ContextBudgetTrimmer(CharTokenizer(), max_passes=2)
        policy = ContextPolicy(limit=20, reserve_output=0, trim_args=("doc",))

        result = trimmer.trim({"doc": "z" * 50}, policy, render_half)

        assert result.passes == 2
        assert result.over_budget

    def test_unreachable_budget_is_returned_not_raised(self, trimmer: ContextBudgetTrimmer) -> None:
        def render_padded(values: Mapping[str, Any]) -> str:
            return "x" * 100 + values["doc"]

        policy = ContextPolicy(limit=50, reserve_output=0, trim_args=("doc",))

        result = trimmer.trim({"doc": "d" * 10}, policy, render_padded)

        assert result.arguments["doc"] == ""
        assert result.tokens == 100
        assert result.over_budget

    def test_non_text_argument_is_inert(self, trimmer: ContextBudgetTrimmer) -> None:
        def render(values: Mapping[str, Any]) -> str:
            return str(values["count"]) * 10

        policy = ContextPolicy(limit=5, reserve_output=0, trim_args=("count", "missing"))

        result = trimmer.trim({"count": 7}, policy, render)

        assert result.arguments == {"count": 7}
        assert result.over_budget


class TestWholePrompt:
    def test_trims_rendered_text_when_no_trim_args(self, trimmer: ContextBudgetTrimmer) -> None:
        arguments = {"doc": "0123456789" * 5}
        policy = ContextPolicy(limit=20, reserve_output=0)

        result = trimmer.trim(arguments, policy, lambda values: values["doc"])

        assert result.arguments is arguments
        assert result.prompt == arguments["doc"][-20:]
        assert result.tokens == 20

    def test_keep_start(self, trimmer: ContextBudgetTrimmer) -> None:
        policy = ContextPolicy(limit=10, reserve_output=0, keep=KeepSide.START)

        result = trimmer.trim({}, policy, lambda values: "0123456789abcdef")

        assert result.prompt == "0123456789"

    def test_fixed_tokens_shrink_budget(self, trimmer: ContextBudgetTrimmer) -> None:
        policy = ContextPolicy(limit=30, reserve_output=5)

        result = trimmer.trim({}, policy, lambda values: "p" * 30, fixed_tokens=10)

        assert result.target == 15
        assert result.prompt == "p" * 15
