# -*- coding: utf-8 -*-
"""Constrained continuous-time Riccati backward pass.

Value function around the nominal trajectory:
    V(t, xbar + dx) = s(t) + Sv(t)' dx + 1/2 dx' Sm(t) dx

With G = P + B' Sm, g = r + B' Sv and the gains (K, k) of the policy
du = K dx + k, the sweep integrates backward in time

    -dSm/dt = Q + A'Sm + Sm A + K'RK + K'G + G'K
    -dSv/dt = q + A'Sv + K'Rk + K'g + G'k
    -ds/dt  = L + 1/2 k'Rk + k'g

Unconstrained gains are K = -R^{-1} G, k = -R^{-1} g, for which the
equations reduce to the classic Riccati form. With active type-1
constraints C dx + D du + e = 0 the gains are projected by Lagrange
multiplier elimination,
    Ddag = R^{-1} D' (D R^{-1} D')^{-1}
    K = -(I - Ddag D) R^{-1} G - Ddag C
    k = -(I - Ddag D) R^{-1} g - Ddag e
inside the right-hand side, i.e. before the recursion moves further back.

Symmetry and positive semi-definiteness of Sm are checked at every node and,
while integrating, by a terminal event on its smallest eigenvalue, so a
divergence is reported where it starts and not where the integrator gives up.

Partitions are swept strictly from the last to the first: the value function
at the start of partition k+1 is the terminal condition of partition k. The
sweep is expressed as a ``scheduler.TaskGraph`` (``backward_chain``); node
gains of partition k are computed by a follow-up task that overlaps with the
sweep of partition k-1.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.integrate import solve_ivp

from errors import RiccatiDivergence
from linearization import PartitionModel, SegmentModel, TerminalModel
from scheduler import StageCancelled, WorkerContext, WorkerPool, backward_chain
from settings import Settings
from utils import _sym, chol_inv, chol_solve, finite, interp_index, min_eigenvalue


@dataclass
class ValueFunction:
    Sm: np.ndarray      # (n, n)
    Sv: np.ndarray      # (n,)
    s: float

    @classmethod
    def terminal(cls, model: TerminalModel) -> "ValueFunction":
        c = model.cost
        return cls(Sm=_sym(np.asarray(c.dfdxx, dtype=float)), Sv=np.asarray(c.dfdx, dtype=float).copy(), s=float(c.f))


@dataclass
class SegmentSolution:
    mode: int
    time: np.ndarray    # (N,)
    x: np.ndarray       # (N, n) nominal state
    u: np.ndarray       # (N, m) nominal input
    Sm: np.ndarray      # (N, n, n)
    Sv: np.ndarray      # (N, n)
    s: np.ndarray       # (N,)
    K: Optional[np.ndarray] = None   # (N, m, n)
    k: Optional[np.ndarray] = None   # (N, m)


@dataclass
class PartitionSolution:
    partition: int
    t0: float
    t1: float
    segments: List[SegmentSolution]


@dataclass
class BackwardResult:
    solutions: List[PartitionSolution]
    value_at_start: ValueFunction
    trace: list

    @property
    def predicted_cost(self) -> float:
        return float(self.value_at_start.s)


# =============================================================================
# Gains
# =============================================================================

def projected_gains(H, G, g, C, D, e) -> Tuple[np.ndarray, np.ndarray]:
    """Minimizer du = K dx + k of 1/2 du'H du + du'(G dx + g) s.t. C dx + D du + e = 0."""
    HinvG = chol_solve(H, G)
    Hinvg = chol_solve(H, g)
    if D.shape[0] == 0:
        return -HinvG, -Hinvg

    HinvDt = chol_solve(H, D.T)
    Ddag = HinvDt @ chol_inv(D @ HinvDt)                  # (m, p)
    K = -(HinvG - Ddag @ (D @ HinvG)) - Ddag @ C
    k = -(Hinvg - Ddag @ (D @ Hinvg)) - Ddag @ e
    return K, k


def feedback_gains(A, B, R, P, r, C, D, e, Sm, Sv) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Return (K, k, G, g) at one instant; constrained when D has rows."""
    G = P + B.T @ Sm
    g = r + B.T @ Sv
    K, k = projected_gains(R, G, g, C, D, e)
    return K, k, G, g


def _blend(values: np.ndarray, i: int, w: float) -> np.ndarray:
    if w == 0.0:
        return values[i]
    if w == 1.0:
        return values[i + 1]
    return (1.0 - w) * values[i] + w * values[i + 1]


def riccati_rhs(seg: SegmentModel, n: int):
    """dy/dt for y = [vec(Sm), Sv, s] with node data interpolated in time."""
    nn = n * n

    def rhs(t, y):
        i, w = interp_index(seg.time, t)
        A = _blend(seg.A, i, w)
        B = _blend(seg.B, i, w)
        Q = _blend(seg.Q, i, w)
        R = _blend(seg.R, i, w)
        P = _blend(seg.P, i, w)
        q = _blend(seg.q, i, w)
        r = _blend(seg.r, i, w)
        L = float(_blend(seg.L, i, w))
        C = _blend(seg.C, i, w)
        D = _blend(seg.D, i, w)
        e = _blend(seg.e, i, w)

        Sm = y[:nn].reshape(n, n)
        Sv = y[nn:nn + n]
        K, k, G, g = feedback_gains(A, B, R, P, r, C, D, e, Sm, Sv)

        dSm = Q + A.T @ Sm + Sm @ A + K.T @ R @ K + K.T @ G + G.T @ K
        dSv = q + A.T @ Sv + K.T @ R @ k + K.T @ g + G.T @ k
        ds = L + 0.5 * float(k @ R @ k) + float(k @ g)
        return -np.concatenate([_sym(dSm).reshape(-1), dSv, [ds]])

    return rhs


# =============================================================================
# One partition
# =============================================================================

def _check_value(Sm: np.ndarray, t: float, partition: int, settings: Settings):
    if not finite(Sm):
        raise RiccatiDivergence("non-finite value function", time=t, partition=partition)
    if not settings.check_numerical_stability:
        return
    asym = float(np.max(np.abs(Sm - Sm.T))) if Sm.size else 0.0
    scale = max(1.0, float(np.max(np.abs(Sm)))) if Sm.size else 1.0
    if asym > settings.riccati_psd_tol * scale:
        raise RiccatiDivergence("value function matrix is not symmetric", time=t, partition=partition)
    lam = min_eigenvalue(Sm)
    if lam < -settings.riccati_psd_tol * scale:
        raise RiccatiDivergence(
            "value function matrix lost positive semi-definiteness",
            time=t, partition=partition, min_eigenvalue=lam,
        )


def _psd_event(n: int, settings: Settings):
    """Terminal solve_ivp event: zero when the smallest eigenvalue of Sm reaches -tol."""
    nn = n * n

    def event(t, y):
        Sm = y[:nn].reshape(n, n)
        if not finite(Sm):
            return -1.0
        scale = max(1.0, float(np.max(np.abs(Sm))))
        return min_eigenvalue(Sm) + settings.riccati_psd_tol * scale

    event.terminal = True
    event.direction = -1
    return event


def sweep_partition(
    model: PartitionModel,
    terminal: ValueFunction,
    settings: Settings,
    *,
    cancel=None,
) -> Tuple[PartitionSolution, ValueFunction]:
    """Integrate the value function over one partition, last segment first."""
    n = terminal.Sv.shape[0]
    nn = n * n
    y = np.concatenate([terminal.Sm.reshape(-1), terminal.Sv, [terminal.s]])
    out: List[Optional[SegmentSolution]] = [None] * len(model.segments)

    for j in reversed(range(len(model.segments))):
        if cancel is not None and cancel.is_set():
            raise StageCancelled()
        seg = model.segments[j]
        t_eval = seg.time[::-1]
        _check_value(y[:nn].reshape(n, n), float(seg.time[-1]), model.partition, settings)
        events = [_psd_event(n, settings)] if settings.check_numerical_stability else None
        try:
            sol = solve_ivp(
                riccati_rhs(seg, n),
                (float(seg.time[-1]), float(seg.time[0])),
                y,
                method=settings.riccati_method,
                t_eval=t_eval,
                rtol=settings.rel_tol_ode,
                atol=settings.abs_tol_ode,
                events=events,
            )
        except (np.linalg.LinAlgError, FloatingPointError) as err:
            raise RiccatiDivergence(
                f"Riccati right-hand side failed: {err}", time=float(seg.time[-1]), partition=model.partition
            ) from err
        if sol.status == 1:
            Sm_event = _sym(sol.y_events[0][0][:nn].reshape(n, n))
            raise RiccatiDivergence(
                "value function matrix lost positive semi-definiteness",
                time=float(sol.t_events[0][0]), partition=model.partition, min_eigenvalue=min_eigenvalue(Sm_event),
            )
        if sol.status != 0 or sol.y.shape[1] != t_eval.shape[0] or not finite(sol.y):
            t_fail = float(sol.t[-1]) if sol.t.size else float(seg.time[-1])
            raise RiccatiDivergence(f"Riccati integration failed: {sol.message}", time=t_fail, partition=model.partition)

        Y = sol.y.T[::-1]                       # forward time order
        Sm = _sym(Y[:, :nn].reshape(-1, n, n))
        for i in range(len(seg)):
            _check_value(Sm[i], float(seg.time[i]), model.partition, settings)

        out[j] = SegmentSolution(
            mode=seg.mode, time=seg.time, x=seg.x, u=seg.u,
            Sm=Sm, Sv=Y[:, nn:nn + n].copy(), s=Y[:, nn + n].copy(),
        )
        y = Y[0].copy()

    start = out[0]
    handoff = ValueFunction(Sm=start.Sm[0].copy(), Sv=start.Sv[0].copy(), s=float(start.s[0]))
    return PartitionSolution(partition=model.partition, t0=model.t0, t1=model.t1, segments=out), handoff


def compute_gains(model: PartitionModel, solution: PartitionSolution, *, cancel=None) -> PartitionSolution:
    """Node-wise gains; each node only needs its own data and value function."""
    for seg_model, seg in zip(model.segments, solution.segments):
        N = len(seg_model)
        m, n = seg_model.B.shape[2], seg_model.B.shape[1]
        K = np.zeros((N, m, n))
        k = np.zeros((N, m))
        for i in range(N):
            if cancel is not None and cancel.is_set():
                raise StageCancelled()
            K[i], k[i], _, _ = feedback_gains(
                seg_model.A[i], seg_model.B[i], seg_model.R[i], seg_model.P[i], seg_model.r[i],
                seg_model.C[i], seg_model.D[i], seg_model.e[i], seg.Sm[i], seg.Sv[i],
            )
        seg.K, seg.k = K, k
    return solution


# =============================================================================
# Stage
# =============================================================================

def backward_pass(
    models: List[PartitionModel],
    terminal: TerminalModel,
    settings: Settings,
    pool: WorkerPool,
) -> BackwardResult:
    P = len(models)

    def sweep(ctx: WorkerContext, k: int, handoff: ValueFunction):
        return sweep_partition(models[k], handoff, settings, cancel=ctx.cancel)

    def gains(ctx: WorkerContext, k: int, solution: PartitionSolution):
        return compute_gains(models[k], solution, cancel=ctx.cancel)

    graph = backward_chain(P, sweep, ValueFunction.terminal(terminal), after=gains)
    results = graph.run(pool)

    solutions = [results[("after", k)] for k in range(P)]
    start = results[("riccati", 0)][1]
    return BackwardResult(solutions=solutions, value_at_start=start, trace=list(graph.trace))
