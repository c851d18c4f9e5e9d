"""Buffered writes of a transaction, applied to memory on commit."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Protocol

DEFAULT_SIZE = 64


class DataType(Enum):
    """Width of a buffered value."""

    INT = 32
    LONG = 64


class Memory(Protocol):
    def write(self, offset: int, value: int) -> None: ...

    def write32(self, offset: int, value: int) -> None: ...


def _to_int32(value: int) -> int:
    value &= 0xFFFF_FFFF
    return value - (1 << 32) if value & 0x8000_0000 else value


@dataclass
class WriteEntry:
    address: int
    value: int
    datatype: DataType = DataType.INT

    def format(self) -> str:
        return f"[{self.address:x} :  {self.value}]"


class WriteSet:
    """Ordered buffer of 32-bit writes; capacity doubles when full."""

    def __init__(self, size: int = DEFAULT_SIZE) -> None:
        if size <= 0:
            raise ValueError("size must be positive")
        self.size = size
        self.entries: list[WriteEntry] = []

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[WriteEntry]:
        return iter(self.entries)

    def insert(self, address: int, value: int, datatype: DataType = DataType.INT) -> WriteEntry:
        """Append a write, even if the address is already buffered."""
        if len(self.entries) == self.size:
            self.size *= 2
        entry = WriteEntry(address, _to_int32(value), datatype)
        self.entries.append(entry)
        return entry

    def update(self, address: int, value: int, datatype: DataType = DataType.INT) -> WriteEntry:
        """Overwrite the value of the first entry for ``address`` or append one."""
        entry = self.contains(address)
        if entry is not None:
            entry.value = _to_int32(value)
            return entry
        return self.insert(address, value, datatype)

    def contains(self, address: int) -> WriteEntry | None:
        """First entry for ``address``, or None."""
        return next((e for e in self.entries if e.address == address), None)

    def empty(self) -> WriteSet:
        self.entries.clear()
        return self

    def persist(self, memory: Memory) -> None:
        """Apply every buffered write to ``memory`` in insertion order."""
        for entry in self.entries:
            if entry.datatype is DataType.INT:
                memory.write32(entry.address, entry.value)
            else:
                memory.write(entry.address, entry.value)

    def format(self) -> str:
        lines = [f"WRITE SET (elements: {len(self.entries)}, size: {self.size}) --------------"]
        lines.extend(e.format() for e in self.entries)
        return "\n".join(lines)


@dataclass
class PgasWriteEntry:
    address: int
    value: int

    def format(self) -> str:
        return f"[{self.address:5d} :  {self.value}]"


class PgasWriteSet:
    """Buffer of 64-bit writes a service node holds for one application node."""

    def __init__(self, size: int = DEFAULT_SIZE) -> None:
        if size <= 0:
            raise ValueError("size must be positive")
        self.size = size
        self.entries: list[PgasWriteEntry] = []

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[PgasWriteEntry]:
        return iter(self.entries)

    def insert(self, address: int, value: int) -> PgasWriteEntry:
        if len(self.entries) == self.size:
            self.size *= 2
        entry = PgasWriteEntry(address, value)
        self.entries.append(entry)
        return entry

    def update(self, address: int, value: int) -> PgasWriteEntry:
        """Overwrite the value of the first entry for ``address`` or append one."""
        entry = next((e for e in self.entries if e.address == address), None)
        if entry is not None:
            entry.value = value
            return entry
        return self.insert(address, value)

    def contains(self, address: int) -> PgasWriteEntry | None:
        """Most recent entry for ``address``, or None."""
        return next((e for e in reversed(self.entries) if e.address == address), None)

    def empty(self) -> None:
        self.entries.clear()

    def persist(self, store: Memory) -> int:
        """Write every entry to ``store`` in order; return how many were written."""
        for entry in self.entries:
            store.write(entry.address, entry.value)
        return len(self.entries)

    def format(self) -> str:
        lines = [f"WRITE SET PGAS (elements: {len(self.entries)}, size: {self.size}) --------------"]
        lines.extend(e.format() for e in self.entries)
        return "\n".join(lines)