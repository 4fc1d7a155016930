# -*- coding: utf-8 -*-
"""Sequential Linear-Quadratic (SLQ) solver.

One outer iteration:

  1) LQ model along the nominal rollout        (parallel over nodes)
  2) Riccati backward pass                     (partitions last -> first;
                                                continuous ODE for "slq",
                                                discrete recursion for "ilqr")
  3) forward pass with line search             (candidates in parallel,
                                                partitions first -> last)
  4) accept / stop

State machine
  INITIALIZING -> BUILDING_MODEL -> BACKWARD_PASS -> FORWARD_PASS -> BUILDING_MODEL ...
  BUILDING_MODEL -> FAILED     (LQModelError)
  BACKWARD_PASS  -> FAILED     (RiccatiDivergence)
  FORWARD_PASS   -> FAILED     (IntegrationDivergence: every candidate diverged)
  FORWARD_PASS   -> CONVERGED  (small improvement, exhausted line search, iteration cap)

Whatever the outcome, ``controller()`` and ``performance_index()`` return the
last accepted policy and its cost; a failed iteration never replaces them.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from controller import Controller
from errors import (
    IntegrationDivergence,
    InvalidConfigurationError,
    LQModelError,
    RiccatiDivergence,
    SLQError,
    SolverState,
    SolverStatus,
)
from line_search import line_search
from linearization import build_lq_model
from problem import Constraint, CostFunction, OperatingPoints, OptimalControlProblem, SystemDynamics
from ilqr import backward_pass_discrete
from riccati import backward_pass
from rollout import PerformanceIndex, Trajectory, performance_index, rollout
from scheduler import WorkerPool
from schedule import ModeSchedule, PartitionSchedule
from settings import Settings
from utils import finite


class SLQSolver:
    def __init__(
        self,
        dynamics: SystemDynamics,
        cost: CostFunction,
        operating_points: OperatingPoints,
        settings: Optional[Settings] = None,
        mode_schedule: Optional[ModeSchedule] = None,
        constraint: Optional[Constraint] = None,
    ):
        self.problem = OptimalControlProblem(
            dynamics=dynamics,
            cost=cost,
            constraint=constraint if constraint is not None else Constraint(),
        )
        self.operating_points = operating_points
        self.settings = settings if settings is not None else Settings()
        self.mode_schedule = mode_schedule if mode_schedule is not None else ModeSchedule()
        self.reset()

    # ------------------------------------------------------------------
    # bookkeeping
    # ------------------------------------------------------------------

    def reset(self):
        self.state = SolverState.INITIALIZING
        self.status = SolverStatus.NOT_STARTED
        self.failure: Optional[SLQError] = None
        self.iteration = 0
        self.state_trace: List[SolverState] = []
        self.predicted_cost = float("nan")
        self.last_backward_trace: list = []
        self.timers = {"rollout": 0.0, "linearize": 0.0, "backward": 0.0, "forward": 0.0}
        self._controller: Optional[Controller] = None
        self._trajectories: Optional[List[Trajectory]] = None
        self._performance = PerformanceIndex()
        self._history: List[Dict[str, Any]] = []

    def _set_state(self, state: SolverState):
        self.state = state
        self.state_trace.append(state)

    def _finish(self, status: SolverStatus, failure: Optional[SLQError] = None):
        self.status = status
        self.failure = failure
        self._set_state(SolverState.FAILED if failure is not None else SolverState.CONVERGED)
        if failure is not None and (self.settings.display_info or self.settings.display_short_summary):
            print(f"    [{self.settings.algorithm.upper()}] iteration {self.iteration} failed: {type(failure).__name__}: {failure}")

    def _record(self, alpha: float):
        p = self._performance
        self._history.append({
            "iteration": int(self.iteration),
            "total_cost": float(p.total_cost),
            "constraint1_ise": float(p.constraint1_ise),
            "constraint2_ise": float(p.constraint2_ise),
            "merit": float(p.merit),
            "alpha": float(alpha),
            "predicted_cost": float(self.predicted_cost),
            **{f"time_{k}": float(v) for k, v in self.timers.items()},
        })

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------

    def controller(self) -> Optional[Controller]:
        return None if self._controller is None else self._controller.copy()

    def performance_index(self) -> PerformanceIndex:
        return self._performance

    def nominal_trajectories(self) -> Optional[List[Trajectory]]:
        return self._trajectories

    def iteration_history(self) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._history]

    def history_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self._history)

    # ------------------------------------------------------------------
    # main entry point
    # ------------------------------------------------------------------

    def run(
        self,
        start_time: float,
        initial_state: Sequence[float],
        final_time: float,
        partition_boundaries: Sequence[float],
    ) -> Tuple[Controller, PerformanceIndex]:
        """Optimize over [start_time, final_time]; returns (controller, performance index).

        Invalid input raises ``InvalidConfigurationError`` before any work.
        Numerical failures do not raise: see ``status`` / ``failure``.
        """
        partitions = PartitionSchedule(partition_boundaries)
        partitions.validate_horizon(float(start_time), float(final_time))
        x0 = np.asarray(initial_state, dtype=float).reshape(-1)
        if x0.size == 0 or not finite(x0):
            raise InvalidConfigurationError("initial state must be a non-empty finite vector")

        self.reset()
        self._set_state(SolverState.INITIALIZING)
        with WorkerPool(self.settings.n_threads) as pool:
            self._iterate(pool, x0, partitions)

        if self.settings.display_short_summary:
            self._print_summary()
        return self._controller.copy(), self._performance

    def _iterate(self, pool: WorkerPool, x0: np.ndarray, partitions: PartitionSchedule):
        s = self.settings
        problem = self.problem
        modes = self.mode_schedule
        merit_weight = 0.0 if s.no_state_constraints else float(s.constraint_merit_weight)

        # iteration 0: operating-point controller
        controller = self.operating_points.initial_controller(partitions.start_time, partitions.final_time)
        self._controller = controller
        t0 = time.perf_counter()
        try:
            trajs = rollout(problem, controller, x0, partitions, modes, s)
        except IntegrationDivergence as err:
            self.timers["rollout"] += time.perf_counter() - t0
            self._finish(SolverStatus.INTEGRATION_DIVERGENCE, err)
            return
        self.timers["rollout"] += time.perf_counter() - t0
        self._trajectories = trajs
        self._performance = performance_index(problem, trajs, merit_weight=merit_weight)
        self._record(alpha=0.0)
        if s.display_info:
            self._print_iteration(alpha=0.0)

        if s.max_num_iterations == 0:
            self._finish(SolverStatus.MAX_ITERATIONS)
            return

        for it in range(1, int(s.max_num_iterations) + 1):
            self.iteration = it

            # 1) LQ model
            self._set_state(SolverState.BUILDING_MODEL)
            t0 = time.perf_counter()
            try:
                models, terminal = build_lq_model(self._trajectories, problem, s, pool, iteration=it - 1)
            except LQModelError as err:
                self._finish(SolverStatus.MODEL_FAILURE, err)
                return
            finally:
                self.timers["linearize"] += time.perf_counter() - t0

            # 2) backward pass
            self._set_state(SolverState.BACKWARD_PASS)
            t0 = time.perf_counter()
            try:
                backward = backward_pass_discrete if s.algorithm == "ilqr" else backward_pass
                bw = backward(models, terminal, s, pool)
            except RiccatiDivergence as err:
                self._finish(SolverStatus.RICCATI_DIVERGENCE, err)
                return
            finally:
                self.timers["backward"] += time.perf_counter() - t0
            self.predicted_cost = bw.predicted_cost
            self.last_backward_trace = bw.trace

            # 3) forward pass
            self._set_state(SolverState.FORWARD_PASS)
            t0 = time.perf_counter()
            try:
                ls = line_search(
                    problem, bw.solutions, x0, partitions, modes, s, pool, self._performance,
                    merit_weight=merit_weight,
                )
            except IntegrationDivergence as err:
                self._finish(SolverStatus.INTEGRATION_DIVERGENCE, err)
                return
            finally:
                self.timers["forward"] += time.perf_counter() - t0

            if not ls.accepted:
                self._record(alpha=0.0)
                if s.display_info:
                    print(f"    [{s.algorithm.upper()}] iteration {it}: line search exhausted")
                self._finish(SolverStatus.LINE_SEARCH_EXHAUSTED)
                return

            # 4) accept
            previous = self._performance
            best = ls.best
            self._controller = best.controller
            self._trajectories = best.trajectories
            self._performance = best.performance
            self._record(alpha=best.alpha)
            if s.display_info:
                self._print_iteration(alpha=best.alpha)

            rel = abs(previous.merit - self._performance.merit) / max(abs(previous.merit), 1e-12)
            if rel < s.min_rel_cost and self._performance.constraint1_ise <= s.min_rel_constraint1_ise:
                self._finish(SolverStatus.CONVERGED)
                return

        self._finish(SolverStatus.MAX_ITERATIONS)

    # ------------------------------------------------------------------
    # display
    # ------------------------------------------------------------------

    def _print_iteration(self, alpha: float):
        p = self._performance
        print(f"\n#### Iteration {self.iteration}")
        print(f"    cost = {p.total_cost:.6f}, ISE1 = {p.constraint1_ise:.3e}, ISE2 = {p.constraint2_ise:.3e}")
        if self.iteration > 0:
            print(f"    learning rate = {alpha:.4g}, predicted cost = {self.predicted_cost:.6f}")

    def _print_summary(self):
        p = self._performance
        t = self.timers
        print(f"\n{'=' * 60}\n{self.settings.algorithm.upper()}: {self.status.value} after {self.iteration} iteration(s)\n{'=' * 60}")
        print(f"    total cost: {p.total_cost:.6f}")
        print(f"    constraint ISE: type-1 = {p.constraint1_ise:.3e}, type-2 = {p.constraint2_ise:.3e}")
        print(
            f"    Breakdown: rollout={t['rollout']:.4f}s, linearize={t['linearize']:.4f}s, "
            f"backward={t['backward']:.4f}s, forward={t['forward']:.4f}s"
        )
        if self.failure is not None:
            print(f"    failure: {self.failure}")
