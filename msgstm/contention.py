"""Timestamp-based contention management between conflicting transactions."""

from __future__ import annotations

from typing import Callable, Iterable, Optional, Union

from msgstm.protocol import Conflict

PRIORITY_LIMIT = 100_000_000

AbortHandler = Callable[[int, Conflict], None]


class ContentionManager:
    """Decides which of two conflicting transactions survives.

    Every node has a timestamp; a smaller timestamp means a higher priority,
    and ties go to the smaller node id. When an attacker wins, every losing
    node is handed to ``on_abort`` together with the kind of conflict.
    """

    def __init__(self, num_nodes: int, on_abort: Optional[AbortHandler] = None) -> None:
        if num_nodes <= 0:
            raise ValueError("num_nodes must be positive")
        self.num_nodes = num_nodes
        self.on_abort = on_abort
        self._timestamps = [0] * num_nodes

    def set_timestamp(self, node: int, timestamp: int) -> None:
        self._timestamps[node] = timestamp

    def timestamp(self, node: int) -> int:
        return self._timestamps[node]

    def reset(self, node: int) -> None:
        """Forget the node's timestamp, as after its transaction ended."""
        self._timestamps[node] = 0

    def _beats(self, attacker: int, defender: int) -> bool:
        ts = self._timestamps
        return ts[attacker] < ts[defender] or (
            ts[attacker] == ts[defender] and attacker < defender
        )

    def _loses_to_reader(self, attacker: int, reader: int) -> bool:
        ts = self._timestamps
        return ts[attacker] > ts[reader] or (
            ts[attacker] == ts[reader] and reader < attacker
        )

    def _abort(self, node: int, conflict: Conflict) -> None:
        if self.on_abort is not None:
            self.on_abort(node, conflict)

    def raw_waw(self, attacker: int, defender: int, conflict: Conflict) -> bool:
        """Resolve a conflict with a single writer; True if the attacker wins."""
        conflict = Conflict(conflict)
        if self._beats(attacker, defender):
            self._abort(defender, conflict)
            return True
        return False

    def war(self, attacker: int, readers: Iterable[int], conflict: Conflict) -> bool:
        """Resolve a write against readers; the attacker must beat every one of them.

        On a win every reader other than the attacker is aborted.
        """
        conflict = Conflict(conflict)
        readers = sorted(set(readers))
        if any(self._loses_to_reader(attacker, r) for r in readers):
            return False
        for reader in readers:
            if reader != attacker:
                self._abort(reader, conflict)
        return True

    def resolve(
        self,
        attacker: int,
        defenders: Union[int, Iterable[int]],
        conflict: Conflict,
    ) -> bool:
        """General resolution by kind of conflict.

        For read-after-write and write-after-write the first defender is the
        writer; for write-after-read every defender is a reader and all of
        them are aborted on a win.
        """
        conflict = Conflict(conflict)
        if isinstance(defenders, int):
            group = [defenders]
        else:
            group = list(defenders)
        if conflict in (Conflict.READ_AFTER_WRITE, Conflict.WRITE_AFTER_WRITE):
            if not group:
                raise ValueError("a writer conflict needs a defender")
            return self.raw_waw(attacker, group[0], conflict)
        if conflict is Conflict.WRITE_AFTER_READ:
            readers = sorted(set(group))
            if any(self._loses_to_reader(attacker, r) for r in readers):
                return False
            for reader in readers:
                self._abort(reader, conflict)
            return True
        return False

    def priority_order(self) -> list[tuple[int, int]]:
        """Nodes with a running transaction, highest priority first, with their timestamps."""
        ts = self._timestamps
        ranked = sorted(range(self.num_nodes), key=lambda n: (ts[n], n))
        return [(n, ts[n]) for n in ranked if 0 < ts[n] <= PRIORITY_LIMIT]

    def format_priorities(self) -> str:
        parts = "".join(f"{node:02d} [{ts}] > " for node, ts in self.priority_order())
        return f"\t{parts}none"