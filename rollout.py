# -*- coding: utf-8 -*-
"""Rollout integrator and performance index.

A rollout integrates dx/dt = f(t, x, u(t, x), mode) under a controller over
one partition. Inside a partition the horizon is split at the switching
times of the mode schedule; the RK45 solver is re-created at every event
(the state is continuous, the vector field is not).

The running cost is integrated together with the state (augmented state
[x, J]) so the reported cost carries the integrator's accuracy rather than a
quadrature over the stored samples.

The accepted steps are the samples the LQ model is built on, so their
spacing is capped at ``max_time_step``. Without the cap a fast-growing
nominal rollout leaves gaps that the interpolated model and policy cannot
represent.

Failure modes raise ``IntegrationDivergence``:
  - the number of accepted steps exceeds
    ceil(max_num_steps_per_second * partition length)
  - the vector field or the state becomes non-finite
  - the solver itself fails (step size underflow)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np
from scipy.integrate import RK45, trapezoid

from controller import Controller
from errors import IntegrationDivergence
from problem import OptimalControlProblem
from scheduler import StageCancelled
from schedule import ModeSchedule, PartitionSchedule
from settings import Settings
from utils import finite


# =============================================================================
# Trajectory
# =============================================================================

@dataclass
class Segment:
    """Samples of one mode interval; time is strictly increasing."""

    mode: int
    time: np.ndarray     # (N,)
    state: np.ndarray    # (N, n)
    input: np.ndarray    # (N, m)
    cost: np.ndarray     # (N,) running cost accumulated from the partition start

    def __len__(self):
        return int(self.time.shape[0])


@dataclass
class Trajectory:
    """Rollout of one partition [t0, t1]."""

    partition: int
    t0: float
    t1: float
    segments: List[Segment]

    @property
    def running_cost(self) -> float:
        return float(self.segments[-1].cost[-1])

    @property
    def final_state(self) -> np.ndarray:
        return self.segments[-1].state[-1]

    @property
    def final_mode(self) -> int:
        return self.segments[-1].mode

    def num_samples(self) -> int:
        return sum(len(s) for s in self.segments)

    def samples(self) -> Iterator[Tuple[int, int, float, np.ndarray, np.ndarray]]:
        """(segment index, mode, t, x, u) for every stored sample."""
        for j, seg in enumerate(self.segments):
            for i in range(len(seg)):
                yield j, seg.mode, float(seg.time[i]), seg.state[i], seg.input[i]

    def stacked(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Concatenated (time, state, input); event times appear twice."""
        return (
            np.concatenate([s.time for s in self.segments]),
            np.concatenate([s.state for s in self.segments], axis=0),
            np.concatenate([s.input for s in self.segments], axis=0),
        )


# =============================================================================
# Integration
# =============================================================================

def step_budget(settings: Settings, t0: float, t1: float) -> int:
    return max(1, int(math.ceil(float(settings.max_num_steps_per_second) * (t1 - t0))))


def rollout_partition(
    problem: OptimalControlProblem,
    controller: Controller,
    x0: np.ndarray,
    t0: float,
    t1: float,
    modes: ModeSchedule,
    settings: Settings,
    *,
    partition: int = 0,
    cancel=None,
) -> Trajectory:
    """Integrate one partition. Pure: touches nothing but the returned trajectory."""
    dynamics, cost = problem.dynamics, problem.cost
    x0 = np.asarray(x0, dtype=float).reshape(-1)
    n = x0.size
    if not finite(x0):
        raise IntegrationDivergence("non-finite initial state", time=t0, partition=partition)

    budget = step_budget(settings, t0, t1)
    n_steps = 0
    z = np.concatenate([x0, [0.0]])
    segments: List[Segment] = []

    for a, b, mode in modes.segments(t0, t1):

        def rhs(t, zz, mode=mode):
            x = zz[:n]
            u = controller.compute_input(t, x)
            dx = np.asarray(dynamics.flow_map(t, x, u, mode), dtype=float).reshape(-1)
            L = float(cost.cost(t, x, u, mode))
            if not finite(dx) or not math.isfinite(L):
                raise IntegrationDivergence("non-finite vector field", time=float(t), partition=partition)
            return np.concatenate([dx, [L]])

        solver = RK45(
            rhs, a, z, b,
            rtol=settings.rel_tol_ode, atol=settings.abs_tol_ode, max_step=float(settings.max_time_step),
        )
        ts = [a]
        zs = [z.copy()]
        while solver.status == "running":
            if cancel is not None and cancel.is_set():
                raise StageCancelled()
            message = solver.step()
            n_steps += 1
            if solver.status == "failed":
                raise IntegrationDivergence(f"integrator failed: {message}", time=float(solver.t), partition=partition)
            if not finite(solver.y):
                raise IntegrationDivergence("non-finite state", time=float(solver.t), partition=partition)
            if n_steps > budget:
                raise IntegrationDivergence(
                    f"step budget of {budget} steps exceeded", time=float(solver.t), partition=partition
                )
            ts.append(float(solver.t))
            zs.append(solver.y.copy())

        Z = np.array(zs)
        time = np.array(ts)
        state = Z[:, :n]
        inputs = np.array([controller.compute_input(t, x) for t, x in zip(time, state)])
        segments.append(Segment(mode=mode, time=time, state=state, input=inputs, cost=Z[:, n]))
        z = Z[-1].copy()

    return Trajectory(partition=partition, t0=float(t0), t1=float(t1), segments=segments)


def rollout(
    problem: OptimalControlProblem,
    controller: Controller,
    x0: np.ndarray,
    partitions: PartitionSchedule,
    modes: ModeSchedule,
    settings: Settings,
    *,
    cancel=None,
) -> List[Trajectory]:
    """All partitions in time order; each starts from its predecessor's final state."""
    out: List[Trajectory] = []
    x = np.asarray(x0, dtype=float).reshape(-1)
    for i, (t0, t1) in enumerate(partitions.intervals()):
        traj = rollout_partition(problem, controller, x, t0, t1, modes, settings, partition=i, cancel=cancel)
        out.append(traj)
        x = traj.final_state
    return out


# =============================================================================
# Performance index
# =============================================================================

@dataclass(frozen=True)
class PerformanceIndex:
    """Total cost, constraint ISEs, and the merit the line search compares.

    merit = total_cost + w * (constraint1_ise + constraint2_ise); w is zero
    for unconstrained runs so merit equals the total cost.
    """

    total_cost: float = float("inf")
    constraint1_ise: float = 0.0
    constraint2_ise: float = 0.0
    merit: float = float("inf")

    def is_finite(self) -> bool:
        return math.isfinite(self.merit)


def constraint_ise(problem: OptimalControlProblem, trajectories: Sequence[Trajectory]) -> Tuple[float, float]:
    """Integral of squared type-1 and type-2 constraint violations."""
    ise1 = 0.0
    ise2 = 0.0
    con = problem.constraint
    for traj in trajectories:
        for seg in traj.segments:
            if len(seg) < 2:
                continue
            g1 = np.zeros(len(seg))
            g2 = np.zeros(len(seg))
            for i in range(len(seg)):
                t, x, u = float(seg.time[i]), seg.state[i], seg.input[i]
                v1 = con.state_input_equality(t, x, u, seg.mode)[0]
                v2 = con.state_only_equality(t, x, seg.mode)[0]
                g1[i] = float(np.dot(v1, v1))
                g2[i] = float(np.dot(v2, v2))
            ise1 += float(trapezoid(g1, seg.time))
            ise2 += float(trapezoid(g2, seg.time))
    return ise1, ise2


def performance_index(
    problem: OptimalControlProblem,
    trajectories: Sequence[Trajectory],
    *,
    merit_weight: float = 0.0,
) -> PerformanceIndex:
    last = trajectories[-1]
    running = sum(t.running_cost for t in trajectories)
    terminal = float(problem.cost.terminal_cost(last.t1, last.final_state, last.final_mode))
    total = float(running + terminal)
    ise1, ise2 = constraint_ise(problem, trajectories)
    merit = total + float(merit_weight) * (ise1 + ise2) if merit_weight > 0.0 else total
    return PerformanceIndex(total_cost=total, constraint1_ise=ise1, constraint2_ise=ise2, merit=merit)
