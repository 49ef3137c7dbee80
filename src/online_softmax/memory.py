"""
memory.py
Allocation tracking for float32 storage.

Key concepts:
- Storage: one contiguous block of float32 scalars. It is handed out by a
  tracker and must be returned to that same tracker exactly once.
- AllocationTracker: counts allocations and frees, current and peak usage.
  Tests use it to prove that copies allocate, moves do not, and nothing is
  freed twice or leaked.
- Capacity: an optional limit (in floats) on live storage. Going past it is an
  allocation failure, the same as the system running out of memory.
"""
from typing import Optional

import numpy as np


class AllocationError(MemoryError):
    """Storage could not be obtained. Fatal for the caller; never retried."""


class Storage:
    """
    A handle to one float32 allocation.

    The handle does not know who owns it; Buffer enforces single ownership.
    The handle only guarantees that it goes back to its tracker once.
    """

    def __init__(self, data: np.ndarray, label: str, tracker: "AllocationTracker"):
        self.data = data
        self.label = label
        self._tracker = tracker
        self._freed = False

    def __len__(self) -> int:
        return self.data.shape[0]

    @property
    def tracker(self) -> "AllocationTracker":
        return self._tracker

    @property
    def freed(self) -> bool:
        return self._freed

    def free(self) -> None:
        """Return this storage to its tracker."""
        if self._freed:
            raise ValueError(f"Double free of storage {self.label}")
        self._tracker._release(self)
        self._freed = True
        self.data = None

    def __repr__(self) -> str:
        state = "freed" if self._freed else f"{len(self)} floats"
        return f"Storage('{self.label}', {state})"


class AllocationTracker:
    """
    Hands out float32 storage and keeps the books on it.

    Every alloc and free is appended to `log` as (event, label, num_floats)
    so tests can replay exactly what happened to each allocation.
    """

    def __init__(self, name: str = "default", capacity: Optional[int] = None):
        self.name = name
        self.capacity = capacity  # in floats, None = unbounded

        self.current_usage = 0
        self.peak_usage = 0
        self.num_allocations = 0
        self.num_frees = 0

        self._live = {}
        self._next_id = 0

        self.log = []

    # --- ALLOCATION ---

    def allocate(self, num_floats: int, label: str = "", zero: bool = True) -> Storage:
        """
        Allocate storage for `num_floats` float32 scalars.

        Args:
            num_floats: Number of scalars, must be positive
            label: Name used in the log and in error messages
            zero: Zero-fill the storage (False leaves it uninitialised)

        Raises:
            AllocationError: capacity exceeded or numpy could not allocate
        """
        if num_floats <= 0:
            raise ValueError(f"Allocation size must be positive, got {num_floats}")

        if self.capacity is not None and self.current_usage + num_floats > self.capacity:
            raise AllocationError(
                f"Cannot allocate {num_floats} floats for {label or 'storage'}: "
                f"{self.current_usage}/{self.capacity} already in use"
            )

        try:
            if zero:
                data = np.zeros(num_floats, dtype=np.float32)
            else:
                data = np.empty(num_floats, dtype=np.float32)
        except MemoryError as e:
            raise AllocationError(f"Cannot allocate {num_floats} floats for {label or 'storage'}") from e

        self._next_id += 1
        label = label or f"storage#{self._next_id}"
        storage = Storage(data, label, self)

        self._live[id(storage)] = storage
        self.current_usage += num_floats
        self.peak_usage = max(self.peak_usage, self.current_usage)
        self.num_allocations += 1
        self.log.append(("alloc", label, num_floats))
        return storage

    def _release(self, storage: Storage) -> None:
        if self._live.pop(id(storage), None) is None:
            raise ValueError(f"Storage {storage.label} was not allocated by tracker '{self.name}'")
        num_floats = len(storage)
        self.current_usage -= num_floats
        self.num_frees += 1
        self.log.append(("free", storage.label, num_floats))

    # --- REPORTING ---

    @property
    def live_allocations(self) -> list:
        """Storages that were allocated and not yet freed."""
        return list(self._live.values())

    def count(self, event: str, label: str) -> int:
        """How many times `event` ("alloc" or "free") happened for `label`."""
        return sum(1 for ev, name, _ in self.log if ev == event and name == label)

    def report(self) -> None:
        """Print a summary of allocation activity."""
        print(f"{'='*60}")
        print(f"Allocations: {self.name}")
        print(f"{'='*60}")

        print(f"  Current:  {self.current_usage:>12,} floats ({self.current_usage * 4 / 1024:.1f} KB)")
        print(f"  Peak:     {self.peak_usage:>12,} floats ({self.peak_usage * 4 / 1024:.1f} KB)")
        if self.capacity is not None:
            pct = self.peak_usage / self.capacity * 100
            print(f"  Capacity: {self.capacity:>12,} floats (peak {pct:.0f}%)")
        print(f"  Allocs:   {self.num_allocations:>12,}")
        print(f"  Frees:    {self.num_frees:>12,}")

        leaked = self.live_allocations
        if leaked:
            print(f"\n→ {len(leaked)} live allocation(s):")
            for storage in leaked:
                print(f"    {storage.label} ({len(storage)} floats)")
        else:
            print(f"\n→ No live allocations")


_default_tracker = AllocationTracker("default")


def default_tracker() -> AllocationTracker:
    """The tracker used when a Buffer is not given one explicitly."""
    return _default_tracker
