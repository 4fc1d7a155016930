# -*- coding: utf-8 -*-
"""Policy representation.

A ``Controller`` is a tagged variant: one dataclass, with ``kind`` selecting
how the stored samples are read.

- ``ControllerType.LINEAR``      u(t, x) = bias(t) + gain(t) @ x
- ``ControllerType.FEEDFORWARD`` u(t, x) = bias(t)

Samples live on a strictly increasing time grid and are linearly interpolated
in between; outside the grid the end samples are held.

Flat layout (one flat array per time sample, used for transmission):
  LINEAR      -> gain row-major (m*n entries) followed by bias (m entries)
  FEEDFORWARD -> bias (m entries)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np

from utils import interp_index


class ControllerType(Enum):
    LINEAR = "linear"
    FEEDFORWARD = "feedforward"


@dataclass
class Controller:
    kind: ControllerType
    time: np.ndarray = field(default_factory=lambda: np.zeros(0))            # (N,)
    bias: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))       # (N, m)
    gain: Optional[np.ndarray] = None                                        # (N, m, n)

    def __post_init__(self):
        self.time = np.asarray(self.time, dtype=float).reshape(-1)
        self.bias = np.asarray(self.bias, dtype=float)
        if self.bias.ndim == 1:
            self.bias = self.bias.reshape(-1, 1)
        N = self.time.shape[0]

        if self.bias.shape[0] != N:
            raise ValueError(f"bias has {self.bias.shape[0]} samples, time grid has {N}")
        if N > 1 and not np.all(np.diff(self.time) > 0.0):
            raise ValueError("controller time grid must be strictly increasing")

        if self.kind is ControllerType.LINEAR:
            if self.gain is None:
                self.gain = np.zeros((N, self.bias.shape[1], 0))
            self.gain = np.asarray(self.gain, dtype=float)
            if self.gain.ndim != 3 or self.gain.shape[:2] != self.bias.shape:
                raise ValueError(
                    f"gain shape {self.gain.shape} does not match bias shape {self.bias.shape}"
                )
        elif self.gain is not None:
            raise ValueError("feedforward controller carries no gain")

    # ------------------------------------------------------------------
    # constructors
    # ------------------------------------------------------------------

    @classmethod
    def linear(cls, time, gain, bias) -> "Controller":
        return cls(ControllerType.LINEAR, time=time, bias=bias, gain=gain)

    @classmethod
    def feedforward(cls, time, bias) -> "Controller":
        return cls(ControllerType.FEEDFORWARD, time=time, bias=bias)

    @classmethod
    def concatenate(cls, parts: Sequence["Controller"]) -> "Controller":
        """Join per-partition controllers into one horizon-wide controller.

        Where a part starts at (or before) the last time of its predecessor,
        the predecessor's overlapping samples are dropped.
        """
        parts = [p for p in parts if not p.empty()]
        if not parts:
            raise ValueError("nothing to concatenate")
        kind = parts[0].kind
        if any(p.kind is not kind for p in parts):
            raise ValueError("cannot concatenate controllers of different kinds")

        times, biases, gains = [], [], []
        for j, p in enumerate(parts):
            keep = slice(None)
            if j + 1 < len(parts):
                keep = p.time < parts[j + 1].time[0]
            times.append(p.time[keep])
            biases.append(p.bias[keep])
            if kind is ControllerType.LINEAR:
                gains.append(p.gain[keep])

        gain = np.concatenate(gains, axis=0) if kind is ControllerType.LINEAR else None
        return cls(kind, time=np.concatenate(times), bias=np.concatenate(biases, axis=0), gain=gain)

    # ------------------------------------------------------------------
    # evaluation
    # ------------------------------------------------------------------

    @property
    def input_dim(self) -> int:
        return int(self.bias.shape[1])

    @property
    def state_dim(self) -> Optional[int]:
        return int(self.gain.shape[2]) if self.gain is not None else None

    def size(self) -> int:
        return int(self.time.shape[0])

    def empty(self) -> bool:
        return self.time.shape[0] == 0

    def _interp(self, values: np.ndarray, t: float) -> np.ndarray:
        i, w = interp_index(self.time, float(t))
        if w == 0.0:
            return values[i]
        if w == 1.0:
            return values[i + 1]
        return (1.0 - w) * values[i] + w * values[i + 1]

    def compute_input(self, t: float, x: np.ndarray) -> np.ndarray:
        if self.empty():
            raise ValueError("controller is empty")
        u = self._interp(self.bias, t)
        if self.kind is ControllerType.LINEAR:
            u = u + self._interp(self.gain, t) @ np.asarray(x, dtype=float).reshape(-1)
        return np.array(u, dtype=float)

    __call__ = compute_input

    # ------------------------------------------------------------------
    # flat (de)serialization
    # ------------------------------------------------------------------

    def flatten(self, time: float) -> List[float]:
        """Controller data at ``time`` as one flat list (see module docstring)."""
        if self.empty():
            raise ValueError("controller is empty")
        bias = self._interp(self.bias, time)
        if self.kind is ControllerType.LINEAR:
            gain = self._interp(self.gain, time)
            return gain.reshape(-1).tolist() + bias.tolist()
        return bias.tolist()

    def flatten_trajectory(self) -> Tuple[List[float], List[List[float]]]:
        """All samples: (times, one flat array per time)."""
        return self.time.tolist(), [self.flatten(t) for t in self.time]

    @classmethod
    def unflatten(
        cls,
        time_array: Sequence[float],
        flat_arrays: Sequence[Sequence[float]],
        *,
        kind: ControllerType,
        input_dim: int,
    ) -> "Controller":
        time = np.asarray(time_array, dtype=float).reshape(-1)
        if len(flat_arrays) != time.shape[0]:
            raise ValueError(f"got {len(flat_arrays)} flat arrays for {time.shape[0]} times")
        m = int(input_dim)
        rows = [np.asarray(a, dtype=float).reshape(-1) for a in flat_arrays]

        if kind is ControllerType.FEEDFORWARD:
            if any(r.size != m for r in rows):
                raise ValueError(f"feedforward flat arrays must have {m} entries")
            bias = np.array(rows).reshape(len(rows), m)
            return cls.feedforward(time, bias)

        if not rows:
            return cls.linear(time, np.zeros((0, m, 0)), np.zeros((0, m)))
        size = rows[0].size
        if size % m != 0 or size < m or any(r.size != size for r in rows):
            raise ValueError("inconsistent flat array sizes for a linear controller")
        n = size // m - 1
        data = np.array(rows)
        gain = data[:, : m * n].reshape(len(rows), m, n)
        bias = data[:, m * n:]
        return cls.linear(time, gain, bias)

    # ------------------------------------------------------------------
    # housekeeping
    # ------------------------------------------------------------------

    def clear(self):
        """Drop all samples; ``empty()`` is true afterwards."""
        m = self.input_dim
        self.time = np.zeros(0)
        self.bias = np.zeros((0, m))
        if self.kind is ControllerType.LINEAR:
            self.gain = np.zeros((0, m, self.gain.shape[2]))

    def set_zero(self):
        """Zero all data; sizes and the time grid are kept."""
        self.bias = np.zeros_like(self.bias)
        if self.gain is not None:
            self.gain = np.zeros_like(self.gain)

    def copy(self) -> "Controller":
        return Controller(
            self.kind,
            time=self.time.copy(),
            bias=self.bias.copy(),
            gain=None if self.gain is None else self.gain.copy(),
        )
