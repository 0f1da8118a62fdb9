"""
Tests for the connect-URL set comparison used by reconciliation.
"""

from __future__ import annotations

from jvmscope.engine.delta import compute_delta


def test_added_removed_and_retained_are_partitioned() -> None:
    delta = compute_delta({"a", "b", "c"}, {"b", "c", "d"})

    assert delta.added == ["d"]
    assert delta.removed == ["a"]
    assert delta.retained == ["b", "c"]
    assert delta.empty is False


def test_identical_sets_produce_an_empty_delta() -> None:
    delta = compute_delta(["x", "y"], ["y", "x"])

    assert delta.empty is True
    assert delta.retained == ["x", "y"]


def test_nothing_observed_removes_everything() -> None:
    """An empty observation is a valid observation: every persisted URL is lost."""
    delta = compute_delta({"b", "a"}, set())

    assert delta.removed == ["a", "b"]
    assert delta.added == []


def test_duplicates_in_input_collapse() -> None:
    delta = compute_delta([], ["a", "a", "b"])

    assert delta.added == ["a", "b"]
