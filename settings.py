# -*- coding: utf-8 -*-
"""Run configuration for the SLQ solver.

``Settings`` is an immutable record. It can be built directly, from a dict
(snake_case or the camelCase names used by the original tooling, e.g.
``absTolODE`` / ``nThreads``), or from a JSON file.
"""

from __future__ import annotations

import dataclasses
import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from errors import InvalidConfigurationError


@dataclass(frozen=True)
class Settings:
    # integrator accuracy / budget
    abs_tol_ode: float = 1e-9
    rel_tol_ode: float = 1e-6
    max_num_steps_per_second: float = 5000.0
    max_time_step: float = 1e-2          # upper bound on the spacing of rollout samples

    # worker pool
    n_threads: int = 1

    # outer loop
    max_num_iterations: int = 15
    min_rel_cost: float = 1e-3
    min_rel_constraint1_ise: float = 1e-3

    # line search
    ls_stepsize_greedy: bool = True
    max_learning_rate: float = 1.0
    min_learning_rate: float = 0.05
    line_search_contraction_rate: float = 0.5
    ls_min_cost_decrease: float = 1e-9

    # backward pass: "slq" (continuous Riccati ODE) or "ilqr" (discrete recursion over nodes)
    algorithm: str = "slq"
    no_state_constraints: bool = True
    check_numerical_stability: bool = True
    riccati_psd_tol: float = 1e-6
    riccati_method: str = "RK45"
    state_constraint_penalty_coeff: float = 0.0
    state_constraint_penalty_base: float = 1.0
    constraint_merit_weight: float = 100.0

    # diagnostics
    display_info: bool = False
    display_short_summary: bool = False

    def __post_init__(self):
        def bad(msg):
            raise InvalidConfigurationError(f"Settings: {msg}")

        if not self.abs_tol_ode > 0.0 or not self.rel_tol_ode > 0.0:
            bad("ODE tolerances must be > 0")
        if not self.max_num_steps_per_second > 0.0:
            bad("max_num_steps_per_second must be > 0")
        if not self.max_time_step > 0.0:
            bad("max_time_step must be > 0")
        if int(self.n_threads) < 1:
            bad("n_threads must be >= 1")
        if int(self.max_num_iterations) < 0:
            bad("max_num_iterations must be >= 0")
        if not (0.0 < self.min_learning_rate <= self.max_learning_rate):
            bad("expected 0 < min_learning_rate <= max_learning_rate")
        if not (0.0 < self.line_search_contraction_rate < 1.0):
            bad("line_search_contraction_rate must be in (0, 1)")
        if self.min_rel_cost < 0.0 or self.min_rel_constraint1_ise < 0.0:
            bad("convergence thresholds must be >= 0")
        if self.ls_min_cost_decrease < 0.0:
            bad("ls_min_cost_decrease must be >= 0")
        if self.riccati_psd_tol < 0.0:
            bad("riccati_psd_tol must be >= 0")
        if self.state_constraint_penalty_coeff < 0.0 or self.state_constraint_penalty_base < 1.0:
            bad("state constraint penalty needs coeff >= 0 and base >= 1")
        if self.constraint_merit_weight < 0.0:
            bad("constraint_merit_weight must be >= 0")
        if self.algorithm not in ("slq", "ilqr"):
            bad(f"unknown algorithm '{self.algorithm}'")
        if self.riccati_method not in ("RK45", "RK23", "DOP853", "Radau", "BDF", "LSODA"):
            bad(f"unknown riccati_method '{self.riccati_method}'")

    # ------------------------------------------------------------------
    # construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        names = {f.name for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = _to_snake(key)
            if name not in names:
                raise InvalidConfigurationError(f"Settings: unknown option '{key}'")
            kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def load(cls, path: str) -> "Settings":
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        # allow {"slq": {...}} or a flat record
        if isinstance(data, dict) and len(data) == 1 and isinstance(next(iter(data.values())), dict):
            data = next(iter(data.values()))
        return cls.from_dict(data)

    def replace(self, **changes) -> "Settings":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


# camelCase names used by the original .info files
_ALIASES = {
    "absTolODE": "abs_tol_ode",
    "relTolODE": "rel_tol_ode",
    "nThreads": "n_threads",
    "minRelConstraint1ISE": "min_rel_constraint1_ise",
    "riccatiPSDTol": "riccati_psd_tol",
}


def _to_snake(key: str) -> str:
    key = key.rstrip("_")
    if key in _ALIASES:
        return _ALIASES[key]
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()
