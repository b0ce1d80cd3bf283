"""Delta computation for agents that report cumulative output.

Some agents resend the whole accumulated value on every update (Pi's
``partialResult``, OpenCode text parts without ``delta``).  Consumers expect
increments, so the previous snapshot is diffed against the current one.
"""

from __future__ import annotations

from typing import NamedTuple


class Delta(NamedTuple):
    text: str
    resync: bool
    """True when ``current`` did not extend ``previous`` and ``text`` is the full value."""


def compute_delta(previous: str, current: str) -> Delta:
    """Return the increment from ``previous`` to ``current``.

    When ``current`` is a prefix extension of ``previous`` the suffix is
    returned.  Otherwise (out-of-order delivery or a provider bug) the full
    current value is returned with ``resync=True`` so no data is lost.
    """
    if current.startswith(previous):
        return Delta(current[len(previous) :], resync=False)
    return Delta(current, resync=True)


class PendingDeltaBuffer:
    """Last cumulative snapshot per key (tool call id, part id, ...)."""

    def __init__(self) -> None:
        self._snapshots: dict[str, str] = {}

    def advance(self, key: str, current: str) -> Delta:
        """Diff ``current`` against the stored snapshot and store it."""
        delta = compute_delta(self._snapshots.get(key, ""), current)
        self._snapshots[key] = current
        return delta

    def snapshot(self, key: str) -> str | None:
        return self._snapshots.get(key)

    def discard(self, key: str) -> None:
        self._snapshots.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._snapshots
