"""Growable bitset answering "is this remote id already stored locally?"."""

from __future__ import annotations

from typing import Iterable


class PresenceIndex:
    """Dense bitset keyed by remote id.

    ``add`` beyond the current capacity grows the backing buffer (at least
    doubling) instead of failing; membership tests beyond capacity are False.
    """

    def __init__(self, size: int = 0) -> None:
        if size < 0:
            raise ValueError(f"size must be >= 0, got {size}")
        self._bits = bytearray((size + 8) // 8)
        self._count = 0

    @classmethod
    def from_ids(cls, ids: Iterable[int], size_hint: int = 0) -> "PresenceIndex":
        index = cls(size_hint)
        for remote_id in ids:
            index.add(remote_id)
        return index

    @property
    def capacity(self) -> int:
        """Largest remote id + 1 that fits without growing."""
        return len(self._bits) * 8

    def _grow(self, remote_id: int) -> None:
        needed = remote_id // 8 + 1
        new_len = max(needed, len(self._bits) * 2)
        self._bits.extend(bytes(new_len - len(self._bits)))

    def add(self, remote_id: int) -> bool:
        """Mark remote_id present.  Returns True if it was not present before."""
        if remote_id < 0:
            raise ValueError(f"remote id must be >= 0, got {remote_id}")
        if remote_id >= self.capacity:
            self._grow(remote_id)
        byte, mask = remote_id >> 3, 1 << (remote_id & 7)
        if self._bits[byte] & mask:
            return False
        self._bits[byte] |= mask
        self._count += 1
        return True

    def __contains__(self, remote_id: object) -> bool:
        if not isinstance(remote_id, int) or remote_id < 0 or remote_id >= self.capacity:
            return False
        return bool(self._bits[remote_id >> 3] & (1 << (remote_id & 7)))

    def __len__(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return f"PresenceIndex(count={self._count}, capacity={self.capacity})"
