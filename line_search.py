# -*- coding: utf-8 -*-
"""Forward pass with line search.

For a step size alpha the candidate policy is

    u(t, x) = ubar(t) + alpha * k(t) + K(t) (x - xbar(t))

stored as a LINEAR controller with bias = ubar + alpha * k - K xbar. The
controller interpolates bias and K separately, so between nodes the applied
input differs from the formula above by a term of second order in the node
spacing (bounded by ``max_time_step``); at the nodes it is exact. Each
candidate is rolled out over all partitions in time order (the final state
of partition i is the initial state of partition i+1).

Search policies
  greedy      alpha = max_lr, max_lr * c, max_lr * c^2, ... >= min_lr,
              evaluated one after the other; the first sufficient decrease
              is accepted.
  exhaustive  the same candidate set, evaluated in parallel on the pool;
              the best candidate is accepted if its decrease is sufficient.

A decrease is sufficient when
    merit_new < merit_nominal - ls_min_cost_decrease * max(1, |merit_nominal|)

A candidate whose rollout diverges is dropped. When *every* candidate
diverges the stage fails with ``IntegrationDivergence``; when candidates roll
out but none is sufficient, the search is exhausted (``accepted=False``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from controller import Controller
from errors import IntegrationDivergence
from problem import OptimalControlProblem
from riccati import PartitionSolution
from rollout import PerformanceIndex, Trajectory, performance_index, rollout
from scheduler import WorkerContext, WorkerPool
from schedule import ModeSchedule, PartitionSchedule
from settings import Settings


@dataclass
class Candidate:
    alpha: float
    controller: Controller
    trajectories: Optional[List[Trajectory]] = None
    performance: Optional[PerformanceIndex] = None
    error: Optional[IntegrationDivergence] = None

    @property
    def diverged(self) -> bool:
        return self.error is not None


@dataclass
class LineSearchResult:
    accepted: bool
    best: Optional[Candidate]
    candidates: List[Candidate] = field(default_factory=list)

    @property
    def alpha(self) -> float:
        return self.best.alpha if (self.accepted and self.best is not None) else 0.0


def learning_rates(settings: Settings) -> List[float]:
    alphas = []
    a = float(settings.max_learning_rate)
    while a >= float(settings.min_learning_rate) * (1.0 - 1e-12):
        alphas.append(a)
        a *= float(settings.line_search_contraction_rate)
    return alphas


def candidate_controller(solutions: Sequence[PartitionSolution], alpha: float) -> Controller:
    parts = []
    for sol in solutions:
        for seg in sol.segments:
            bias = seg.u + float(alpha) * seg.k - np.einsum("tij,tj->ti", seg.K, seg.x)
            parts.append(Controller.linear(seg.time, seg.K.copy(), bias))
    return Controller.concatenate(parts)


def sufficient_decrease(new: float, nominal: float, settings: Settings) -> bool:
    if not np.isfinite(new):
        return False
    return new < nominal - float(settings.ls_min_cost_decrease) * max(1.0, abs(nominal))


def evaluate_candidate(
    problem: OptimalControlProblem,
    candidate: Candidate,
    x0: np.ndarray,
    partitions: PartitionSchedule,
    modes: ModeSchedule,
    settings: Settings,
    *,
    merit_weight: float = 0.0,
    cancel=None,
) -> Candidate:
    try:
        trajs = rollout(problem, candidate.controller, x0, partitions, modes, settings, cancel=cancel)
    except IntegrationDivergence as err:
        candidate.error = err
        return candidate
    candidate.trajectories = trajs
    candidate.performance = performance_index(problem, trajs, merit_weight=merit_weight)
    return candidate


def line_search(
    problem: OptimalControlProblem,
    solutions: Sequence[PartitionSolution],
    x0: np.ndarray,
    partitions: PartitionSchedule,
    modes: ModeSchedule,
    settings: Settings,
    pool: WorkerPool,
    nominal: PerformanceIndex,
    *,
    merit_weight: float = 0.0,
) -> LineSearchResult:
    candidates = [Candidate(alpha=a, controller=candidate_controller(solutions, a)) for a in learning_rates(settings)]
    evaluated: List[Candidate] = []
    best: Optional[Candidate] = None

    if settings.ls_stepsize_greedy:
        local = pool.local_clone(problem)
        for cand in candidates:
            evaluate_candidate(local, cand, x0, partitions, modes, settings, merit_weight=merit_weight)
            evaluated.append(cand)
            if settings.display_info:
                _print_candidate(cand)
            if not cand.diverged and sufficient_decrease(cand.performance.merit, nominal.merit, settings):
                return LineSearchResult(accepted=True, best=cand, candidates=evaluated)
    else:
        def run(cand: Candidate, ctx: WorkerContext):
            return evaluate_candidate(
                ctx.state, cand, x0, partitions, modes, settings, merit_weight=merit_weight, cancel=ctx.cancel
            )

        evaluated = pool.parallel_map(run, candidates, prototype=problem, chunks_per_thread=1)
        if settings.display_info:
            for cand in evaluated:
                _print_candidate(cand)
        finite = [c for c in evaluated if not c.diverged]
        if finite:
            # ties go to the larger step
            best = min(finite, key=lambda c: (c.performance.merit, -c.alpha))
            if sufficient_decrease(best.performance.merit, nominal.merit, settings):
                return LineSearchResult(accepted=True, best=best, candidates=evaluated)

    if evaluated and all(c.diverged for c in evaluated):
        first = evaluated[0].error
        raise IntegrationDivergence(
            f"all {len(evaluated)} line-search candidates diverged; first: {first}",
            time=first.time, partition=first.partition,
        )
    return LineSearchResult(accepted=False, best=best, candidates=evaluated)


def _print_candidate(cand: Candidate):
    if cand.diverged:
        print(f"      [line search] alpha={cand.alpha:.4g}  diverged: {cand.error}")
    else:
        p = cand.performance
        print(
            f"      [line search] alpha={cand.alpha:.4g}  cost={p.total_cost:.6f}  "
            f"ISE1={p.constraint1_ise:.3e}  ISE2={p.constraint2_ise:.3e}"
        )
