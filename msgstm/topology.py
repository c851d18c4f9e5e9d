"""Which nodes run the application and which run the lock service."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Assignment(Enum):
    """Strategy for assigning service roles to node ids."""

    MODULO = 0
    CUSTOM = 1
    BITMAP = 2


DSL_NODE_TABLE = (
    0, 0, 0, 0, 0, 0, 0, 0,
    0, 0, 0, 0, 0, 0, 0, 0,
    1, 1, 1, 1, 1, 1, 1, 1,
    1, 1, 1, 1, 1, 1, 1, 1,
    0, 0, 0, 0, 0, 0, 0, 0,
    0, 0, 0, 0, 0, 0, 0, 0,
)

DSL_NODE_HEX = (0xAAAA,) * 8

_WORD_BITS = 16


@dataclass(frozen=True)
class Topology:
    """Role layout of ``num_nodes`` nodes.

    With ``MODULO`` every ``dsl_per_node``-th node is a service node; with
    ``CUSTOM`` ``table`` marks service nodes with 1; with ``BITMAP`` a set bit
    in ``bitmap`` marks an application node.
    """

    num_nodes: int
    assignment: Assignment = Assignment.MODULO
    dsl_per_node: int = 2
    table: tuple[int, ...] = DSL_NODE_TABLE
    bitmap: tuple[int, ...] = DSL_NODE_HEX

    def __post_init__(self) -> None:
        if self.num_nodes < 0:
            raise ValueError("num_nodes must not be negative")
        if self.assignment is Assignment.MODULO and self.dsl_per_node <= 0:
            raise ValueError("dsl_per_node must be positive")
        if self.assignment is Assignment.CUSTOM and self.num_nodes > len(self.table):
            raise ValueError("assignment table is shorter than the number of nodes")
        if self.assignment is Assignment.BITMAP and self.num_nodes > len(self.bitmap) * _WORD_BITS:
            raise ValueError("assignment bitmap is shorter than the number of nodes")

    def _check(self, node_id: int) -> None:
        if not 0 <= node_id < self.num_nodes:
            raise ValueError(f"node id {node_id} out of range 0..{self.num_nodes - 1}")

    def is_app_core(self, node_id: int) -> bool:
        self._check(node_id)
        if self.assignment is Assignment.MODULO:
            return node_id % self.dsl_per_node != 0
        if self.assignment is Assignment.CUSTOM:
            return not self.table[node_id]
        word = self.bitmap[node_id // _WORD_BITS]
        return bool((word >> (node_id % _WORD_BITS)) & 1)

    def is_dsl_core(self, node_id: int) -> bool:
        return not self.is_app_core(node_id)

    def dsl_nodes(self) -> list[int]:
        """Ids of service nodes, in increasing order."""
        return [n for n in range(self.num_nodes) if self.is_dsl_core(n)]

    def app_nodes(self) -> list[int]:
        """Ids of application nodes, in increasing order."""
        return [n for n in range(self.num_nodes) if self.is_app_core(n)]

    def dsl_seq(self, node_id: int) -> int:
        """Position of a service node among all service nodes."""
        if not self.is_dsl_core(node_id):
            raise ValueError(f"node {node_id} is not a service node")
        return sum(1 for n in range(node_id) if self.is_dsl_core(n))

    def num_dsl_nodes(self) -> int:
        return len(self.dsl_nodes())

    def num_app_nodes(self) -> int:
        return self.num_nodes - self.num_dsl_nodes()