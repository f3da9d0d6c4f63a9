"""Tracks delivered-but-unconfirmed WAL batches to compute a safe confirmed LSN."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field


@dataclass(eq=False)
class _Batch:
    lsn: int
    pending: set[int] = field(default_factory=set)


class InFlightTracker:
    """Advances the confirmed LSN only past batches whose every id is confirmed."""

    def __init__(self) -> None:
        self._batches: deque[_Batch] = deque()
        self._index: dict[int, _Batch] = {}
        self._confirmed_lsn = 0

    @property
    def confirmed_lsn(self) -> int:
        return self._confirmed_lsn

    def register(self, lsn: int, ids: Iterable[int]) -> None:
        batch = _Batch(lsn)
        for message_id in ids:
            batch.pending.add(message_id)
            self._index[message_id] = batch
        self._batches.append(batch)

    def tracks(self, message_id: int) -> bool:
        return message_id in self._index

    def validate(self, ids: Iterable[int]) -> None:
        """Raise ValueError if any id is unknown or repeated."""
        seen: set[int] = set()
        for message_id in ids:
            if message_id not in self._index:
                raise ValueError(f"outboxrelay: confirm unknown id {message_id}")
            if message_id in seen:
                raise ValueError(f"outboxrelay: confirm duplicate id {message_id}")
            seen.add(message_id)

    def advance_idle(self, lsn: int) -> None:
        """Move the confirmed LSN forward when nothing is in flight."""
        if not self._batches and lsn > self._confirmed_lsn:
            self._confirmed_lsn = lsn

    def apply(self, ids: Iterable[int]) -> tuple[int, bool]:
        """Mark ids confirmed; return the confirmed LSN and whether it advanced."""
        for message_id in ids:
            batch = self._index.pop(message_id, None)
            if batch is None:
                raise ValueError(f"outboxrelay: apply unknown id {message_id}")
            batch.pending.discard(message_id)

        advanced = False
        while self._batches and not self._batches[0].pending:
            self._confirmed_lsn = self._batches.popleft().lsn
            advanced = True
        return self._confirmed_lsn, advanced