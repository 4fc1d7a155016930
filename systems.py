# -*- coding: utf-8 -*-
"""Benchmark problems (continuous time) for the SLQ solver.

- EXP0: two-mode switched linear system with one switch at t = 0.1897 over
  [0, 2]; the optimal cost for that switching time is 9.7667
  (Xu & Antsaklis switched-system example).
- constrained point mass: 2D double integrator with a type-1
  state-input constraint u_x + u_y = 0.2.
- pendulum swing: damped nonlinear pendulum, finite-difference Jacobians.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List

import numpy as np

from problem import (
    Constraint,
    CostFunction,
    FunctionDynamics,
    LinearConstraint,
    LinearSystem,
    OperatingPoints,
    QuadraticCost,
    SystemDynamics,
)
from schedule import ModeSchedule


@dataclass
class Case:
    name: str
    dynamics: SystemDynamics
    cost: CostFunction
    constraint: Constraint
    operating_points: OperatingPoints
    mode_schedule: ModeSchedule
    x0: np.ndarray
    start_time: float
    final_time: float
    partitions: List[float]
    expected_cost: float = float("nan")
    settings_overrides: dict = field(default_factory=dict)


# =============================================================================
# 1) EXP0: switched linear system
# =============================================================================

def make_exp0() -> Case:
    """x in R^2, u in R^1, modes 0 -> 1 at t = 0.1897."""
    A1 = np.array([[0.6, 1.2], [-0.8, 3.4]])
    B1 = np.array([[1.0], [1.0]])
    A2 = np.array([[4.0, 3.0], [-1.0, 0.0]])
    B2 = np.array([[2.0], [-1.0]])
    dynamics = LinearSystem([A1, A2], [B1, B2])

    # L = 1/2 (x2 - 2)^2 + 1/2 u^2,  Phi = 1/2 (x1 - 4)^2 + 1/2 (x2 - 2)^2
    cost = QuadraticCost(
        Q=np.diag([0.0, 1.0]),
        R=np.array([[1.0]]),
        x_nominal=np.array([0.0, 2.0]),
        u_nominal=np.zeros(1),
        Q_final=np.eye(2),
        x_final=np.array([4.0, 2.0]),
    )

    switching_times = [0.1897]
    return Case(
        name="EXP0",
        dynamics=dynamics,
        cost=cost,
        constraint=Constraint(),
        operating_points=OperatingPoints(np.zeros(2), np.zeros(1)),
        mode_schedule=ModeSchedule(switching_times, [0, 1]),
        x0=np.array([0.0, 2.0]),
        start_time=0.0,
        final_time=2.0,
        partitions=[0.0, switching_times[0], 2.0],
        expected_cost=9.7667,
        settings_overrides=dict(abs_tol_ode=1e-10, rel_tol_ode=1e-7, max_num_steps_per_second=10000,
                                max_num_iterations=30, min_learning_rate=1e-4, min_rel_cost=5e-4,
                                max_time_step=5e-3),
    )


# =============================================================================
# 2) Point mass with a state-input equality constraint
# =============================================================================

def make_constrained_point_mass() -> Case:
    """x = [px, py, vx, vy], u = [ax, ay], constraint ax + ay - 0.2 = 0."""
    A = np.zeros((4, 4))
    A[0, 2] = A[1, 3] = 1.0
    B = np.zeros((4, 2))
    B[2, 0] = B[3, 1] = 1.0
    dynamics = LinearSystem([A], [B])

    cost = QuadraticCost(
        Q=np.diag([0.0, 0.0, 0.1, 0.1]),
        R=np.diag([0.1, 0.1]),
        x_nominal=np.zeros(4),
        u_nominal=np.zeros(2),
        Q_final=np.diag([20.0, 20.0, 2.0, 2.0]),
        x_final=np.array([1.0, 1.0, 0.0, 0.0]),
    )
    constraint = LinearConstraint(C=np.zeros((1, 4)), D=np.array([[1.0, 1.0]]), e=np.array([-0.2]))

    return Case(
        name="ConstrainedPointMass",
        dynamics=dynamics,
        cost=cost,
        constraint=constraint,
        operating_points=OperatingPoints(np.zeros(4), np.zeros(2)),
        mode_schedule=ModeSchedule(),
        x0=np.zeros(4),
        start_time=0.0,
        final_time=2.0,
        partitions=[0.0, 1.0, 2.0],
        settings_overrides=dict(no_state_constraints=False),
    )


# =============================================================================
# 3) Pendulum swing (nonlinear, finite-difference derivatives)
# =============================================================================

def make_pendulum(final_time: float = 3.0) -> Case:
    """x = [theta, theta_dot] (theta = 0 hanging down), u = [torque]."""
    g, length, mass, damping = 9.81, 1.0, 1.0, 0.1

    def f(t, x, u, mode):
        th, om = x[0], x[1]
        return np.array([om, -g / length * math.sin(th) - damping * om + float(u[0]) / (mass * length ** 2)])

    cost = QuadraticCost(
        Q=np.diag([0.1, 0.01]),
        R=np.array([[0.05]]),
        x_nominal=np.array([math.pi / 2.0, 0.0]),
        u_nominal=np.zeros(1),
        Q_final=np.diag([20.0, 2.0]),
        x_final=np.array([math.pi / 2.0, 0.0]),
    )

    return Case(
        name="Pendulum",
        dynamics=FunctionDynamics(f),
        cost=cost,
        constraint=Constraint(),
        operating_points=OperatingPoints(np.zeros(2), np.zeros(1)),
        mode_schedule=ModeSchedule(),
        x0=np.zeros(2),
        start_time=0.0,
        final_time=float(final_time),
        partitions=[0.0, final_time / 2.0, float(final_time)],
        settings_overrides=dict(max_num_iterations=30, min_rel_cost=1e-4),
    )


CASES = {
    "EXP0": make_exp0,
    "ConstrainedPointMass": make_constrained_point_mass,
    "Pendulum": make_pendulum,
}
