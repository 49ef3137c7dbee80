"""
column.py
A 1-D column of logits and the softmax algorithms that run over it.

Three ways to compute the same distribution:
- softmax_two_pass: find max(x), then sum exp(x - max), then normalise.
  Subtracting the max keeps every exponent argument <= 0, so nothing
  overflows no matter how large the logits are.
- softmax_two_pass_unrolled: the same maths with the loops unrolled by
  UNROLL lanes, each lane keeping its own partial max / partial sum.
- softmax_online: one pass that keeps a running max m and a running
  normaliser d. Whenever m grows, d is rescaled by exp(m_prev - m) so that
  d == sum_j exp(x_j - m) holds after every element.

Which of two-pass and online is faster depends on the workload and the
machine (memory-bound vs compute-bound). Neither is assumed to win.

Sums are accumulated in Python floats (double precision). Results are stored
as float32 in a freshly allocated Column; inputs are never modified.
"""
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional

import numpy as np

from .buffer import Buffer
from .memory import AllocationTracker

EPSILON = 1e-6
UNROLL = 4  # loop bodies in softmax_two_pass_unrolled are written out for 4 lanes


@dataclass
class OnlineState:
    """
    Running (max, normaliser) pair of the online softmax.

    After update() has seen x_1..x_k:
        m == max(x_1..x_k)
        d == sum_j exp(x_j - m)

    Two states over disjoint ranges combine with merge(), which is
    associative and has OnlineState() as its identity. That is what lets a
    column be reduced in independent chunks.
    """

    m: float = -math.inf
    d: float = 0.0

    def update(self, x: float) -> "OnlineState":
        """Fold one element into the state in place. Returns self."""
        m = max(self.m, x)
        if m == -math.inf:
            return self  # only -inf so far: contributes nothing
        self.d = self.d * math.exp(self.m - m) + math.exp(x - m)
        self.m = m
        return self

    def merge(self, other: "OnlineState") -> "OnlineState":
        """Combine two partial states into a new one."""
        # d == 0 until a finite element is folded in; -inf - -inf would be NaN
        if other.d == 0.0:
            return OnlineState(self.m, self.d)
        if self.d == 0.0:
            return OnlineState(other.m, other.d)

        m = max(self.m, other.m)
        d = self.d * math.exp(self.m - m) + other.d * math.exp(other.m - m)
        return OnlineState(m, d)


class Column:
    """
    N logits (or probabilities) stored in an N x 1 Buffer.

    The Column owns its Buffer; copying, moving and releasing a Column do
    exactly what they do to the Buffer.

    Example:
        x = Column.random(1024, rng=np.random.default_rng(0))
        p = x.softmax_online()
        assert p.approx_equal(x.softmax_two_pass())
    """

    def __init__(self, buffer: Buffer):
        if buffer.cols != 1:
            raise ValueError(f"Column needs an (N, 1) buffer, got {buffer.shape}")
        self._buffer = buffer

    # --- CONSTRUCTION ---

    @classmethod
    def zeros(cls, n: int, tracker: Optional[AllocationTracker] = None, label: str = "") -> "Column":
        return cls(Buffer.zeros(n, 1, tracker=tracker, label=label))

    @classmethod
    def random(cls, n: int, rng: Optional[np.random.Generator] = None,
               tracker: Optional[AllocationTracker] = None, label: str = "") -> "Column":
        return cls(Buffer.random(n, 1, rng=rng, tracker=tracker, label=label))

    @classmethod
    def from_values(cls, values: Iterable[float], tracker: Optional[AllocationTracker] = None,
                    label: str = "") -> "Column":
        """Build a column holding `values` (stored as float32)."""
        values = list(values)
        col = cls.zeros(len(values), tracker=tracker, label=label)
        for i, v in enumerate(values):
            col.set(i, v)
        return col

    def _new_from(self, values: List[float], suffix: str) -> "Column":
        """Allocate uninitialised storage, fill it and hand it to a new Column."""
        storage = self._buffer._owned_storage("read")
        out = storage.tracker.allocate(len(values), f"{suffix}({storage.label})", zero=False)
        out.data[:] = values
        return Column(Buffer.from_storage(out, len(values), 1))

    # --- OWNERSHIP ---

    def copy(self) -> "Column":
        return Column(self._buffer.copy())

    def move(self) -> "Column":
        return Column(self._buffer.move())

    def release(self) -> None:
        self._buffer.release()

    @property
    def owns_storage(self) -> bool:
        return self._buffer.owns_storage

    def __copy__(self) -> "Column":
        return self.copy()

    def __deepcopy__(self, memo) -> "Column":
        return self.copy()

    def __enter__(self) -> "Column":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    # --- ELEMENT ACCESS ---

    def __len__(self) -> int:
        return self._buffer.rows

    def get(self, i: int) -> float:
        return self._buffer.get(i, 0)

    def set(self, i: int, value: float) -> None:
        self._buffer.set(i, 0, value)

    __getitem__ = get
    __setitem__ = set

    def __iter__(self):
        return iter(self.tolist())

    def tolist(self) -> List[float]:
        """Elements as Python floats."""
        return self._buffer._owned_storage("read").data.tolist()

    def to_numpy(self) -> np.ndarray:
        """Elements as a new 1-D float32 array."""
        return self._buffer.to_numpy().reshape(-1)

    def sum(self) -> float:
        return math.fsum(self.tolist())

    # --- SOFTMAX ---

    def softmax_two_pass(self) -> "Column":
        """Safe softmax: max pass, sum pass, then normalise into a new Column."""
        xs = self.tolist()

        # Pass 1: max
        max_x = -math.inf
        for x in xs:
            if x > max_x:
                max_x = x

        # Pass 2: sum of shifted exponentials
        d = 0.0
        for x in xs:
            d += math.exp(x - max_x)

        # Pass 3: normalise
        out = [math.exp(x - max_x) / d for x in xs]
        return self._new_from(out, "softmax_two_pass")

    def softmax_two_pass_unrolled(self) -> "Column":
        """Safe softmax with every loop unrolled by UNROLL lanes plus a scalar tail."""
        xs = self.tolist()
        n = len(xs)
        tail = n - n % UNROLL

        # Pass 1: per-lane max
        m0 = m1 = m2 = m3 = -math.inf
        for i in range(0, tail, UNROLL):
            m0 = max(m0, xs[i])
            m1 = max(m1, xs[i + 1])
            m2 = max(m2, xs[i + 2])
            m3 = max(m3, xs[i + 3])
        max_x = max(m0, m1, m2, m3)
        for i in range(tail, n):
            max_x = max(max_x, xs[i])

        # Pass 2: per-lane sums
        s0 = s1 = s2 = s3 = 0.0
        for i in range(0, tail, UNROLL):
            s0 += math.exp(xs[i] - max_x)
            s1 += math.exp(xs[i + 1] - max_x)
            s2 += math.exp(xs[i + 2] - max_x)
            s3 += math.exp(xs[i + 3] - max_x)
        d = (s0 + s1) + (s2 + s3)
        for i in range(tail, n):
            d += math.exp(xs[i] - max_x)

        # Pass 3: normalise
        out = [0.0] * n
        for i in range(0, tail, UNROLL):
            out[i] = math.exp(xs[i] - max_x) / d
            out[i + 1] = math.exp(xs[i + 1] - max_x) / d
            out[i + 2] = math.exp(xs[i + 2] - max_x) / d
            out[i + 3] = math.exp(xs[i + 3] - max_x) / d
        for i in range(tail, n):
            out[i] = math.exp(xs[i] - max_x) / d
        return self._new_from(out, "softmax_unrolled")

    def softmax_online(self) -> "Column":
        """Online softmax: running max and rescaled normaliser in one pass."""
        xs = self.tolist()

        m = -math.inf
        d = 0.0
        for x in xs:
            m_prev = m
            m = max(m, x)
            if m == -math.inf:
                continue  # only -inf so far: contributes nothing
            d = d * math.exp(m_prev - m) + math.exp(x - m)

        # No finite max: the distribution is undefined
        if m == -math.inf:
            return self._new_from([math.nan] * len(xs), "softmax_online")
        out = [math.exp(x - m) / d for x in xs]
        return self._new_from(out, "softmax_online")

    def softmax_online_chunked(self, chunk_size: int = 256) -> "Column":
        """
        Online softmax reduced chunk by chunk.

        Each chunk produces its own OnlineState; the states are folded with
        OnlineState.merge. This is the same combination a parallel reduction
        over disjoint ranges would use.
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        xs = self.tolist()

        state = OnlineState()
        for start in range(0, len(xs), chunk_size):
            partial = OnlineState()
            for x in xs[start:start + chunk_size]:
                partial.update(x)
            state = state.merge(partial)

        if state.m == -math.inf:
            return self._new_from([math.nan] * len(xs), "softmax_chunked")
        out = [math.exp(x - state.m) / state.d for x in xs]
        return self._new_from(out, "softmax_chunked")

    def softmax_naive(self) -> "Column":
        """
        exp(x) / sum(exp(x)) with no max subtraction.

        Only here as a reference: exp overflows to inf for logits above ~88
        (float32), and the result turns into NaN.
        """
        x = self.to_numpy()
        with np.errstate(over="ignore", invalid="ignore"):
            e = np.exp(x)
            out = e / np.sum(e)
        return self._new_from(out.tolist(), "softmax_naive")

    # --- COMPARISON ---

    def approx_equal(self, other: "Column", eps: float = EPSILON) -> bool:
        """True iff both columns have the same length and every |a_i - b_i| <= eps."""
        if len(self) != len(other):
            return False
        for a, b in zip(self.tolist(), other.tolist()):
            if not abs(a - b) <= eps:
                return False
        return True

    def max_abs_diff(self, other: "Column") -> float:
        """Largest elementwise difference, for reporting how close two results are."""
        if len(self) != len(other):
            raise ValueError(f"Length mismatch: {len(self)} vs {len(other)}")
        return max(abs(a - b) for a, b in zip(self.tolist(), other.tolist()))

    def __repr__(self) -> str:
        if not self.owns_storage:
            return f"Column({len(self)}, empty)"
        head = ", ".join(f"{v:.4f}" for v in self.tolist()[:4])
        more = ", ..." if len(self) > 4 else ""
        return f"Column({len(self)}, [{head}{more}])"
