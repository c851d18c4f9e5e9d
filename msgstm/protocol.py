"""Message types exchanged between application nodes and lock-service nodes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


class Conflict(IntEnum):
    """Outcome of a lock request on the service node."""

    NO_CONFLICT = 0
    READ_AFTER_WRITE = 1
    WRITE_AFTER_READ = 2
    WRITE_AFTER_WRITE = 3


CONFLICT_REASONS = (
    "NO_CONFLICT",
    "READ_AFTER_WRITE",
    "WRITE_AFTER_READ",
    "WRITE_AFTER_WRITE",
)


def conflict_reason(conflict: Conflict | int) -> str:
    """Return the printable name of a conflict code."""
    try:
        return CONFLICT_REASONS[Conflict(conflict)]
    except ValueError:
        raise ValueError(f"unknown conflict code: {conflict!r}") from None


class Access(Enum):
    """Kind of access a lock entry protects."""

    READ = "read"
    WRITE = "write"


class RequestType(Enum):
    """Commands an application node sends to a service node."""

    LOAD = "load"
    STORE = "store"
    STORE_INC = "store_inc"
    LOAD_NONTX = "load_nontx"
    STORE_NONTX = "store_nontx"
    RMV_NODE = "rmv_node"
    LOAD_RLS = "load_rls"
    STORE_FINISH = "store_finish"
    STATS = "stats"
    UNKNOWN = "unknown"


class ReplyType(Enum):
    """Replies a service node sends back."""

    LOAD_RESPONSE = "load_response"
    STORE_RESPONSE = "store_response"
    LOAD_NONTX_RESPONSE = "load_nontx_response"
    UNKNOWN_RESPONSE = "unknown_response"


@dataclass(frozen=True)
class Request:
    """A command sent by an application node.

    ``value`` carries the value to write (or the increment), ``words`` the
    width of a read (1 for 32 bits, otherwise 64), ``response`` the outcome
    reported when a node is released and ``tx_metadata`` the contention
    manager's priority information.
    """

    type: RequestType
    sender: int
    address: int = 0
    value: int = 0
    words: int = 2
    response: Conflict = Conflict.NO_CONFLICT
    tx_metadata: int = 0


@dataclass(frozen=True)
class Reply:
    """A service node's answer to a request."""

    type: ReplyType
    address: int = 0
    value: int = 0
    response: Conflict = Conflict.NO_CONFLICT


@dataclass(frozen=True)
class StatsMessage:
    """Transaction statistics an application node reports at the end.

    A message with a non-zero ``tx_duration`` carries the aborts, commits and
    retries; one with a zero duration carries the per-reason abort counts.
    """

    sender: int
    aborts: int = 0
    commits: int = 0
    max_retries: int = 0
    tx_duration: float = 0.0
    aborts_raw: int = 0
    aborts_war: int = 0
    aborts_waw: int = 0

    @property
    def type(self) -> RequestType:
        return RequestType.STATS