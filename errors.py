# -*- coding: utf-8 -*-
"""Failure taxonomy and run status for the SLQ solver.

Lower layers (rollout, LQ model builder, Riccati sweep) raise the exceptions
below; the iteration controller in ``solver.py`` catches them, records a
``SolverStatus`` and keeps the last accepted controller.

A line search that finds no improving step is *not* an error. It shows up as
``SolverStatus.LINE_SEARCH_EXHAUSTED`` and ends the run as converged.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, Tuple


class SLQError(Exception):
    """Base class of all solver failures."""


class InvalidConfigurationError(SLQError, ValueError):
    """Malformed settings, partition schedule or mode schedule."""


class IntegrationDivergence(SLQError):
    """Rollout exceeded its step budget or produced non-finite values."""

    def __init__(self, message: str, *, time: Optional[float] = None, partition: Optional[int] = None):
        super().__init__(message)
        self.time = time
        self.partition = partition

    def __str__(self) -> str:
        msg = super().__str__()
        where = []
        if self.partition is not None:
            where.append(f"partition={self.partition}")
        if self.time is not None:
            where.append(f"t={self.time:.6g}")
        return f"{msg} ({', '.join(where)})" if where else msg


class RiccatiDivergence(SLQError):
    """The value-function matrix lost positive semi-definiteness or blew up."""

    def __init__(
        self,
        message: str,
        *,
        time: Optional[float] = None,
        partition: Optional[int] = None,
        min_eigenvalue: Optional[float] = None,
    ):
        super().__init__(message)
        self.time = time
        self.partition = partition
        self.min_eigenvalue = min_eigenvalue

    def __str__(self) -> str:
        msg = super().__str__()
        where = []
        if self.partition is not None:
            where.append(f"partition={self.partition}")
        if self.time is not None:
            where.append(f"t={self.time:.6g}")
        if self.min_eigenvalue is not None:
            where.append(f"min_eig={self.min_eigenvalue:.3e}")
        return f"{msg} ({', '.join(where)})" if where else msg


# (partition, node index, time, message)
NodeFailure = Tuple[int, int, float, str]


class LQModelError(SLQError):
    """One or more nodes of the LQ model could not be built."""

    def __init__(self, failures: List[NodeFailure]):
        self.failures = list(failures)
        head = "; ".join(
            f"partition {p} node {i} (t={t:.6g}): {m}" for p, i, t, m in self.failures[:3]
        )
        more = "" if len(self.failures) <= 3 else f" (+{len(self.failures) - 3} more)"
        super().__init__(f"LQ model failed at {len(self.failures)} node(s): {head}{more}")


class SolverState(Enum):
    INITIALIZING = "initializing"
    BUILDING_MODEL = "building_model"
    BACKWARD_PASS = "backward_pass"
    FORWARD_PASS = "forward_pass"
    CONVERGED = "converged"
    FAILED = "failed"


class SolverStatus(Enum):
    NOT_STARTED = "not_started"
    CONVERGED = "converged"
    LINE_SEARCH_EXHAUSTED = "line_search_exhausted"
    MAX_ITERATIONS = "max_iterations"
    INTEGRATION_DIVERGENCE = "integration_divergence"
    RICCATI_DIVERGENCE = "riccati_divergence"
    MODEL_FAILURE = "model_failure"

    @property
    def converged(self) -> bool:
        return self in (
            SolverStatus.CONVERGED,
            SolverStatus.LINE_SEARCH_EXHAUSTED,
            SolverStatus.MAX_ITERATIONS,
        )
