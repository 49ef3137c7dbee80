"""
buffer.py
A fixed-shape, exclusively owned float32 buffer.

Ownership rules:
- A Buffer owns exactly one Storage, allocated once.
- copy() allocates new storage and copies every element. The two buffers have
  independent lifetimes.
- move() hands the storage to a new Buffer. The source is left empty and its
  release (explicit, on `with` exit, or on garbage collection) frees nothing.
- Storage is freed exactly once, by whichever Buffer owns it at the end.

Element access is checked: coordinates outside (rows, cols) raise
OutOfRangeError rather than touching memory they do not own.
"""
from typing import Optional

import numpy as np

from .memory import AllocationError, AllocationTracker, Storage, default_tracker

__all__ = ["Buffer", "OutOfRangeError", "AllocationError"]


class OutOfRangeError(IndexError):
    """get/set outside the buffer's extents."""


def _check_extents(rows: int, cols: int) -> None:
    if rows <= 0 or cols <= 0:
        raise ValueError(f"Buffer extents must be positive, got ({rows}, {cols})")


class Buffer:
    """
    A rows x cols block of float32 scalars, stored row-major.

    Example:
        a = Buffer.zeros(4, 1)          # allocates 4 floats
        b = a.copy()                    # allocates 4 more, independent
        c = b.move()                    # no allocation, b is now empty
        c.release()                     # frees c's storage
        b.release()                     # no-op, b owns nothing
    """

    verbose: bool = False

    def __init__(self, storage: Storage, rows: int, cols: int):
        _check_extents(rows, cols)
        if storage.freed:
            raise ValueError(f"Cannot wrap {storage.label}: storage was already freed")
        if len(storage) != rows * cols:
            raise ValueError(
                f"Storage {storage.label} holds {len(storage)} floats, "
                f"expected {rows} * {cols} = {rows * cols}"
            )

        self.rows = rows
        self.cols = cols
        self._storage = storage

    # --- CONSTRUCTION ---

    @classmethod
    def zeros(cls, rows: int, cols: int, tracker: Optional[AllocationTracker] = None,
              label: str = "") -> "Buffer":
        """Allocate a zero-filled buffer."""
        _check_extents(rows, cols)
        tracker = tracker or default_tracker()
        storage = tracker.allocate(rows * cols, label, zero=True)
        buf = cls(storage, rows, cols)
        if cls.verbose:
            buf._print_status(f"[+] Allocate {storage.label} ({rows}, {cols}) zeros")
        return buf

    @classmethod
    def random(cls, rows: int, cols: int, rng: Optional[np.random.Generator] = None,
               tracker: Optional[AllocationTracker] = None, label: str = "") -> "Buffer":
        """Allocate a buffer filled with uniform [0, 1) values from `rng`."""
        _check_extents(rows, cols)
        rng = rng or np.random.default_rng()
        tracker = tracker or default_tracker()
        storage = tracker.allocate(rows * cols, label, zero=False)
        try:
            rng.random(rows * cols, dtype=np.float32, out=storage.data)
        except BaseException:
            storage.free()
            raise
        buf = cls(storage, rows, cols)
        if cls.verbose:
            buf._print_status(f"[+] Allocate {storage.label} ({rows}, {cols}) random")
        return buf

    @classmethod
    def from_storage(cls, storage: Storage, rows: int, cols: int) -> "Buffer":
        """
        Take ownership of an existing allocation without touching its contents.

        The caller gives up the storage entirely: it must not be freed or
        wrapped again elsewhere.
        """
        return cls(storage, rows, cols)

    def copy(self) -> "Buffer":
        """Deep copy into freshly allocated storage."""
        storage = self._owned_storage("copy")
        tracker = storage.tracker
        new_storage = tracker.allocate(self.size, f"{storage.label}.copy", zero=False)
        np.copyto(new_storage.data, storage.data)
        buf = type(self)(new_storage, self.rows, self.cols)
        if Buffer.verbose:
            buf._print_status(f"[+] Copy {storage.label} → {new_storage.label}")
        return buf

    def move(self) -> "Buffer":
        """Transfer the storage to a new Buffer, leaving this one empty."""
        storage = self._owned_storage("move")
        self._storage = None
        buf = type(self)(storage, self.rows, self.cols)
        if Buffer.verbose:
            buf._print_status(f"[→] Move {storage.label}")
        return buf

    def __copy__(self) -> "Buffer":
        return self.copy()

    def __deepcopy__(self, memo) -> "Buffer":
        return self.copy()

    # --- LIFETIME ---

    @property
    def owns_storage(self) -> bool:
        return self._storage is not None

    def release(self) -> None:
        """Free the storage if this buffer still owns it."""
        storage = getattr(self, "_storage", None)
        if storage is None:
            return
        self._storage = None
        storage.free()
        if Buffer.verbose:
            self._print_status(f"[-] Free {storage.label}", tracker=storage.tracker)

    def __enter__(self) -> "Buffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __del__(self):
        self.release()

    # --- ELEMENT ACCESS ---

    @property
    def shape(self) -> tuple:
        return (self.rows, self.cols)

    @property
    def size(self) -> int:
        """Total number of floats in the buffer."""
        return self.rows * self.cols

    def _owned_storage(self, op: str) -> Storage:
        if self._storage is None:
            raise ValueError(f"Cannot {op}: buffer no longer owns storage (moved or released)")
        return self._storage

    def _offset(self, y: int, x: int) -> int:
        if not (0 <= y < self.rows and 0 <= x < self.cols):
            raise OutOfRangeError(f"Index ({y}, {x}) out of range for buffer of shape {self.shape}")
        return y * self.cols + x

    def get(self, y: int, x: int) -> float:
        return float(self._owned_storage("get").data[self._offset(y, x)])

    def set(self, y: int, x: int, value: float) -> None:
        self._owned_storage("set").data[self._offset(y, x)] = value

    def to_numpy(self) -> np.ndarray:
        """Contents as a new (rows, cols) array. The buffer keeps its storage."""
        return self._owned_storage("read").data.reshape(self.rows, self.cols).copy()

    # --- DISPLAY ---

    def _print_status(self, message: str, tracker: Optional[AllocationTracker] = None) -> None:
        tracker = tracker or self._storage.tracker
        usage_kb = tracker.current_usage * 4 / 1024
        msg = message[:42] if len(message) > 42 else message
        print(f"{msg:<42}  live {usage_kb:>7.1f} KB  allocs {tracker.num_allocations:>4}  frees {tracker.num_frees:>4}")

    def __repr__(self) -> str:
        if self._storage is None:
            return f"Buffer({self.shape}, empty)"
        return f"Buffer({self.shape}, '{self._storage.label}')"
