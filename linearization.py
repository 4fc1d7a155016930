# -*- coding: utf-8 -*-
"""Linear-quadratic model along a nominal trajectory.

Every stored rollout sample becomes one node: the linearized dynamics
(A, B), the quadratic cost model (L, q, r, Q, R, P) and, when constraints are
active, the linearized type-1 constraint (e, C, D). Nodes are independent of
each other, so they are built with ``WorkerPool.parallel_map`` and each
worker queries its own clone of the problem.

A node whose data is non-finite (or whose input Hessian R is not positive
definite) is recorded as a failure instead of being dropped; all failures of
the stage are reported together in one ``LQModelError``.

Type-2 (state-only) constraints F x + h = 0 are folded into the cost as the
penalty 1/2 * c * |F x + h|^2, with c = coeff * base**iteration.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from errors import LQModelError
from problem import OptimalControlProblem, ScalarFunctionQuadraticApproximation
from rollout import Trajectory
from scheduler import WorkerContext, WorkerPool
from settings import Settings
from utils import _sym, finite


@dataclass
class LQNode:
    time: float
    mode: int
    x: np.ndarray        # (n,)
    u: np.ndarray        # (m,)
    A: np.ndarray        # (n, n)
    B: np.ndarray        # (n, m)
    L: float
    q: np.ndarray        # (n,)
    r: np.ndarray        # (m,)
    Q: np.ndarray        # (n, n)
    R: np.ndarray        # (m, m)
    P: np.ndarray        # (m, n)
    e: np.ndarray        # (p,)
    C: np.ndarray        # (p, n)
    D: np.ndarray        # (p, m)


@dataclass
class SegmentModel:
    """Stacked LQ nodes of one mode interval (time strictly increasing)."""

    mode: int
    time: np.ndarray     # (N,)
    x: np.ndarray        # (N, n)
    u: np.ndarray        # (N, m)
    A: np.ndarray        # (N, n, n)
    B: np.ndarray        # (N, n, m)
    L: np.ndarray        # (N,)
    q: np.ndarray        # (N, n)
    r: np.ndarray        # (N, m)
    Q: np.ndarray        # (N, n, n)
    R: np.ndarray        # (N, m, m)
    P: np.ndarray        # (N, m, n)
    e: np.ndarray        # (N, p)
    C: np.ndarray        # (N, p, n)
    D: np.ndarray        # (N, p, m)

    @classmethod
    def stack(cls, nodes: Sequence[LQNode]) -> "SegmentModel":
        def s(name):
            return np.stack([np.asarray(getattr(nd, name), dtype=float) for nd in nodes], axis=0)

        return cls(
            mode=nodes[0].mode,
            time=np.array([nd.time for nd in nodes], dtype=float),
            x=s("x"), u=s("u"), A=s("A"), B=s("B"),
            L=np.array([nd.L for nd in nodes], dtype=float),
            q=s("q"), r=s("r"), Q=s("Q"), R=s("R"), P=s("P"),
            e=s("e"), C=s("C"), D=s("D"),
        )

    @property
    def num_constraints(self) -> int:
        return int(self.e.shape[1])

    def __len__(self):
        return int(self.time.shape[0])


@dataclass
class PartitionModel:
    partition: int
    t0: float
    t1: float
    segments: List[SegmentModel]


@dataclass
class TerminalModel:
    time: float
    mode: int
    x: np.ndarray
    cost: ScalarFunctionQuadraticApproximation


def penalty_coefficient(settings: Settings, iteration: int) -> float:
    if settings.no_state_constraints:
        return 0.0
    return float(settings.state_constraint_penalty_coeff) * float(settings.state_constraint_penalty_base) ** int(iteration)


# =============================================================================
# Per-node approximation
# =============================================================================

def approximate_node(
    problem: OptimalControlProblem,
    t: float,
    x: np.ndarray,
    u: np.ndarray,
    mode: int,
    *,
    constrained: bool,
    penalty: float = 0.0,
) -> LQNode:
    x = np.asarray(x, dtype=float).reshape(-1)
    u = np.asarray(u, dtype=float).reshape(-1)
    n, m = x.size, u.size

    lin = problem.dynamics.linear_approximation(t, x, u, mode)
    quad = problem.cost.quadratic_approximation(t, x, u, mode)

    L = float(quad.f)
    q = np.asarray(quad.dfdx, dtype=float).reshape(n)
    r = np.asarray(quad.dfdu, dtype=float).reshape(m)
    Q = _sym(np.asarray(quad.dfdxx, dtype=float).reshape(n, n))
    R = _sym(np.asarray(quad.dfduu, dtype=float).reshape(m, m))
    P = np.asarray(quad.dfdux, dtype=float).reshape(m, n)

    if constrained:
        e, C, D = problem.constraint.state_input_equality(t, x, u, mode)
        e = np.asarray(e, dtype=float).reshape(-1)
        C = np.asarray(C, dtype=float).reshape(e.size, n)
        D = np.asarray(D, dtype=float).reshape(e.size, m)
        if penalty > 0.0:
            h, F = problem.constraint.state_only_equality(t, x, mode)
            h = np.asarray(h, dtype=float).reshape(-1)
            F = np.asarray(F, dtype=float).reshape(h.size, n)
            L += 0.5 * penalty * float(h @ h)
            q = q + penalty * F.T @ h
            Q = Q + penalty * F.T @ F
    else:
        e, C, D = np.zeros(0), np.zeros((0, n)), np.zeros((0, m))

    return LQNode(
        time=float(t), mode=int(mode), x=x, u=u,
        A=np.asarray(lin.dfdx, dtype=float).reshape(n, n),
        B=np.asarray(lin.dfdu, dtype=float).reshape(n, m),
        L=L, q=q, r=r, Q=Q, R=R, P=P, e=e, C=C, D=D,
    )


def check_node(node: LQNode) -> Optional[str]:
    """Reason why a node is unusable, or None."""
    for name in ("A", "B", "q", "r", "Q", "R", "P", "e", "C", "D"):
        if not finite(getattr(node, name)):
            return f"non-finite {name}"
    if not np.isfinite(node.L):
        return "non-finite cost"
    try:
        np.linalg.cholesky(node.R)
    except np.linalg.LinAlgError:
        return "input cost Hessian R is not positive definite"
    if node.D.shape[0] > 0 and np.linalg.matrix_rank(node.D) < node.D.shape[0]:
        return "state-input constraint Jacobian D is not full row rank"
    return None


# =============================================================================
# Stage
# =============================================================================

def build_lq_model(
    trajectories: Sequence[Trajectory],
    problem: OptimalControlProblem,
    settings: Settings,
    pool: WorkerPool,
    *,
    iteration: int = 0,
) -> Tuple[List[PartitionModel], TerminalModel]:
    constrained = not settings.no_state_constraints
    penalty = penalty_coefficient(settings, iteration)

    items = []
    for k, traj in enumerate(trajectories):
        for j, seg in enumerate(traj.segments):
            for i in range(len(seg)):
                items.append((k, j, i, seg.mode, float(seg.time[i]), seg.state[i], seg.input[i]))

    def build(item, ctx: WorkerContext):
        k, j, i, mode, t, x, u = item
        try:
            node = approximate_node(ctx.state, t, x, u, mode, constrained=constrained, penalty=penalty)
        except (ValueError, ArithmeticError, np.linalg.LinAlgError) as err:
            return item, None, f"{type(err).__name__}: {err}"
        return item, node, check_node(node)

    built = pool.parallel_map(build, items, prototype=problem)

    failures = []
    grouped = {}
    for (k, j, i, mode, t, _, _), node, reason in built:
        if reason is not None:
            failures.append((k, i, t, reason))
            continue
        grouped.setdefault((k, j), []).append(node)

    last = trajectories[-1]
    term = problem.cost.terminal_quadratic_approximation(last.t1, last.final_state, last.final_mode)
    if not term.is_finite():
        failures.append((last.partition, last.num_samples() - 1, last.t1, "non-finite terminal cost model"))

    if failures:
        raise LQModelError(failures)

    models = []
    for k, traj in enumerate(trajectories):
        segs = []
        for j in range(len(traj.segments)):
            try:
                segs.append(SegmentModel.stack(grouped[(k, j)]))
            except ValueError as err:
                raise LQModelError([(k, 0, traj.segments[j].time[0], f"inconsistent node sizes: {err}")])
        models.append(PartitionModel(partition=k, t0=traj.t0, t1=traj.t1, segments=segs))

    terminal = TerminalModel(time=last.t1, mode=last.final_mode, x=np.asarray(last.final_state).copy(), cost=term)
    return models, terminal
