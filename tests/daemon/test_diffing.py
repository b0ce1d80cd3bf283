"""Tests for cumulative-snapshot diffing."""

from __future__ import annotations

from agentrelay.daemon.normalize.diffing import Delta, PendingDeltaBuffer, compute_delta


def test_prefix_extension_yields_suffix() -> None:
    assert compute_delta("ab", "abc") == Delta("c", resync=False)


def test_first_snapshot_is_the_whole_value() -> None:
    assert compute_delta("", "hello") == Delta("hello", resync=False)


def test_unchanged_snapshot_yields_nothing() -> None:
    assert compute_delta("same", "same") == Delta("", resync=False)


def test_non_prefix_snapshot_resyncs_with_full_value() -> None:
    delta = compute_delta("abc", "abX")
    assert delta.text == "abX"
    assert delta.resync is True


def test_buffer_turns_cumulative_updates_into_increments() -> None:
    buffer = PendingDeltaBuffer()
    assert [buffer.advance("call_1", s).text for s in ("a", "ab", "abc")] == ["a", "b", "c"]
    assert buffer.snapshot("call_1") == "abc"
    assert "call_1" in buffer


def test_buffer_keys_are_independent() -> None:
    buffer = PendingDeltaBuffer()
    buffer.advance("one", "xx")
    assert buffer.advance("two", "xxy").text == "xxy"


def test_discard_forgets_snapshot() -> None:
    buffer = PendingDeltaBuffer()
    buffer.advance("part", "hello")
    buffer.discard("part")
    buffer.discard("never-seen")
    assert buffer.snapshot("part") is None
    assert buffer.advance("part", "hello").text == "hello"
