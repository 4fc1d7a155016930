# -*- coding: utf-8 -*-
"""Discrete-time (iLQR) backward pass over the nodes of the LQ model.

Between two nodes t_i < t_{i+1} (dt = t_{i+1} - t_i) the continuous model is
discretized with an explicit Euler step

    Ad = I + A dt,  Bd = B dt,  cost terms scaled by dt

and the value function is propagated by the discrete Riccati recursion

    Qxx = Q dt + Ad' S Ad         Qx = q dt + Ad' Sv
    Quu = R dt + Bd' S Bd         Qu = r dt + Bd' Sv
    Qux = P dt + Bd' S Ad
    K = -Quu^{-1} Qux,  k = -Quu^{-1} Qu   (projected when D has rows)
    S  <- Qxx + K'Quu K + K'Qux + Qux'K
    Sv <- Qx + K'Quu k + K'Qu + Qux'k
    s  <- s + L dt + 1/2 k'Quu k + k'Qu

The last node of a segment has no step after it; its gains are the
continuous-time limit dt -> 0 of the same formulas. Partitions use the same
last-to-first task graph as the continuous sweep; gains come out of the
recursion itself, so there is no follow-up task.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np

from errors import RiccatiDivergence
from linearization import PartitionModel, TerminalModel
from riccati import (
    BackwardResult,
    PartitionSolution,
    SegmentSolution,
    ValueFunction,
    _check_value,
    feedback_gains,
    projected_gains,
)
from scheduler import StageCancelled, WorkerContext, WorkerPool, backward_chain
from settings import Settings
from utils import _sym


def sweep_partition_discrete(
    model: PartitionModel,
    terminal: ValueFunction,
    settings: Settings,
    *,
    cancel=None,
) -> Tuple[PartitionSolution, ValueFunction]:
    n = terminal.Sv.shape[0]
    I = np.eye(n)
    S = np.asarray(terminal.Sm, dtype=float)
    v = np.asarray(terminal.Sv, dtype=float)
    c = float(terminal.s)
    out: List[Optional[SegmentSolution]] = [None] * len(model.segments)

    for j in reversed(range(len(model.segments))):
        seg = model.segments[j]
        N = len(seg)
        m = seg.B.shape[2]
        Sm = np.zeros((N, n, n))
        Sv = np.zeros((N, n))
        s = np.zeros(N)
        K = np.zeros((N, m, n))
        k = np.zeros((N, m))

        _check_value(S, float(seg.time[-1]), model.partition, settings)
        i = N - 1
        try:
            Sm[i], Sv[i], s[i] = S, v, c
            K[i], k[i], _, _ = feedback_gains(
                seg.A[i], seg.B[i], seg.R[i], seg.P[i], seg.r[i], seg.C[i], seg.D[i], seg.e[i], S, v
            )
            for i in range(N - 2, -1, -1):
                if cancel is not None and cancel.is_set():
                    raise StageCancelled()
                dt = float(seg.time[i + 1] - seg.time[i])
                Ad = I + dt * seg.A[i]
                Bd = dt * seg.B[i]

                Qxx = dt * seg.Q[i] + Ad.T @ S @ Ad
                Quu = dt * seg.R[i] + Bd.T @ S @ Bd
                Qux = dt * seg.P[i] + Bd.T @ S @ Ad
                Qx = dt * seg.q[i] + Ad.T @ v
                Qu = dt * seg.r[i] + Bd.T @ v

                Ki, ki = projected_gains(Quu, Qux, Qu, seg.C[i], seg.D[i], seg.e[i])
                S = _sym(Qxx + Ki.T @ Quu @ Ki + Ki.T @ Qux + Qux.T @ Ki)
                v = Qx + Ki.T @ Quu @ ki + Ki.T @ Qu + Qux.T @ ki
                c = c + dt * float(seg.L[i]) + 0.5 * float(ki @ Quu @ ki) + float(ki @ Qu)
                _check_value(S, float(seg.time[i]), model.partition, settings)

                Sm[i], Sv[i], s[i] = S, v, c
                K[i], k[i] = Ki, ki
        except (np.linalg.LinAlgError, FloatingPointError) as err:
            raise RiccatiDivergence(
                f"discrete Riccati step failed: {err}", time=float(seg.time[i]), partition=model.partition
            ) from err

        out[j] = SegmentSolution(mode=seg.mode, time=seg.time, x=seg.x, u=seg.u, Sm=Sm, Sv=Sv, s=s, K=K, k=k)

    handoff = ValueFunction(Sm=S.copy(), Sv=v.copy(), s=c)
    return PartitionSolution(partition=model.partition, t0=model.t0, t1=model.t1, segments=out), handoff


def backward_pass_discrete(
    models: List[PartitionModel],
    terminal: TerminalModel,
    settings: Settings,
    pool: WorkerPool,
) -> BackwardResult:
    def sweep(ctx: WorkerContext, k: int, handoff: ValueFunction):
        return sweep_partition_discrete(models[k], handoff, settings, cancel=ctx.cancel)

    graph = backward_chain(len(models), sweep, ValueFunction.terminal(terminal))
    results = graph.run(pool)

    solutions = [results[("riccati", k)][0] for k in range(len(models))]
    start = results[("riccati", 0)][1]
    return BackwardResult(solutions=solutions, value_at_start=start, trace=list(graph.trace))
