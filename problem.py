# -*- coding: utf-8 -*-
"""Collaborator interfaces: dynamics, cost, constraints, operating points.

Every collaborator is a pure function of (t, x, u, mode) that returns a value
or an approximation bundle; no "set state, then query" protocol and no hidden
accumulation. The solver still never assumes thread safety: it calls
``clone()`` once per worker thread.

Dimensions are runtime properties. Anything without analytic derivatives
gets central-difference derivatives with relative step sizes
  h_i = max(eps, rel * max(1, |z_i|)).
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from controller import Controller
from utils import _sym


# =============================================================================
# Approximation bundles
# =============================================================================

@dataclass(frozen=True)
class VectorFunctionLinearApproximation:
    f: np.ndarray       # (n,)
    dfdx: np.ndarray    # (n, n)
    dfdu: np.ndarray    # (n, m)


@dataclass(frozen=True)
class ScalarFunctionQuadraticApproximation:
    f: float
    dfdx: np.ndarray    # (n,)
    dfdu: np.ndarray    # (m,)
    dfdxx: np.ndarray   # (n, n)
    dfduu: np.ndarray   # (m, m)
    dfdux: np.ndarray   # (m, n)

    def is_finite(self) -> bool:
        return bool(
            np.isfinite(self.f)
            and np.all(np.isfinite(self.dfdx))
            and np.all(np.isfinite(self.dfdu))
            and np.all(np.isfinite(self.dfdxx))
            and np.all(np.isfinite(self.dfduu))
            and np.all(np.isfinite(self.dfdux))
        )


def _step(z: float, eps: float, rel: float) -> float:
    return max(float(eps), float(rel) * max(1.0, abs(float(z))))


# =============================================================================
# Dynamics
# =============================================================================

class SystemDynamics:
    """dx/dt = f(t, x, u, mode)."""

    fd_eps: float = 1e-6
    fd_rel: float = 1e-7

    def flow_map(self, t: float, x: np.ndarray, u: np.ndarray, mode: int) -> np.ndarray:
        raise NotImplementedError

    def linear_approximation(self, t: float, x: np.ndarray, u: np.ndarray, mode: int) -> VectorFunctionLinearApproximation:
        x = np.asarray(x, dtype=float).reshape(-1)
        u = np.asarray(u, dtype=float).reshape(-1)
        n, m = x.size, u.size
        f0 = np.asarray(self.flow_map(t, x, u, mode), dtype=float).reshape(-1)
        A = np.zeros((f0.size, n))
        B = np.zeros((f0.size, m))
        for i in range(n):
            h = _step(x[i], self.fd_eps, self.fd_rel)
            xp = x.copy()
            xm = x.copy()
            xp[i] += h
            xm[i] -= h
            A[:, i] = (self.flow_map(t, xp, u, mode) - self.flow_map(t, xm, u, mode)) / (2.0 * h)
        for j in range(m):
            h = _step(u[j], self.fd_eps, self.fd_rel)
            up = u.copy()
            um = u.copy()
            up[j] += h
            um[j] -= h
            B[:, j] = (self.flow_map(t, x, up, mode) - self.flow_map(t, x, um, mode)) / (2.0 * h)
        return VectorFunctionLinearApproximation(f=f0, dfdx=A, dfdu=B)

    def clone(self) -> "SystemDynamics":
        return copy.deepcopy(self)


class LinearSystem(SystemDynamics):
    """Switched linear system dx/dt = A[mode] x + B[mode] u."""

    def __init__(self, A_list: Sequence[np.ndarray], B_list: Sequence[np.ndarray]):
        if len(A_list) != len(B_list) or not A_list:
            raise ValueError("need one (A, B) pair per subsystem")
        self.A = [np.asarray(A, dtype=float) for A in A_list]
        self.B = [np.asarray(B, dtype=float).reshape(self.A[0].shape[0], -1) for B in B_list]

    def flow_map(self, t, x, u, mode):
        return self.A[mode] @ np.asarray(x, dtype=float) + self.B[mode] @ np.asarray(u, dtype=float).reshape(-1)

    def linear_approximation(self, t, x, u, mode):
        return VectorFunctionLinearApproximation(
            f=self.flow_map(t, x, u, mode), dfdx=self.A[mode].copy(), dfdu=self.B[mode].copy()
        )


class FunctionDynamics(SystemDynamics):
    """Wrap a plain callable ``f(t, x, u, mode)`` (and optionally its Jacobians)."""

    def __init__(self, f: Callable, jacobian: Optional[Callable] = None):
        self._f = f
        self._jacobian = jacobian

    def flow_map(self, t, x, u, mode):
        return np.asarray(self._f(t, x, u, mode), dtype=float).reshape(-1)

    def linear_approximation(self, t, x, u, mode):
        if self._jacobian is None:
            return super().linear_approximation(t, x, u, mode)
        A, B = self._jacobian(t, x, u, mode)
        return VectorFunctionLinearApproximation(
            f=self.flow_map(t, x, u, mode), dfdx=np.asarray(A, dtype=float), dfdu=np.asarray(B, dtype=float)
        )


# =============================================================================
# Cost
# =============================================================================

class CostFunction:
    """Running cost L(t, x, u, mode) and terminal cost Phi(t, x, mode)."""

    fd_eps: float = 1e-5
    fd_rel: float = 1e-6

    def cost(self, t: float, x: np.ndarray, u: np.ndarray, mode: int) -> float:
        raise NotImplementedError

    def terminal_cost(self, t: float, x: np.ndarray, mode: int) -> float:
        return 0.0

    def quadratic_approximation(self, t, x, u, mode) -> ScalarFunctionQuadraticApproximation:
        x = np.asarray(x, dtype=float).reshape(-1)
        u = np.asarray(u, dtype=float).reshape(-1)
        n = x.size
        z = np.concatenate([x, u])

        def L(zz):
            return float(self.cost(t, zz[:n], zz[n:], mode))

        f, g, H = _fd_quadratic(L, z, self.fd_eps, self.fd_rel)
        return ScalarFunctionQuadraticApproximation(
            f=f, dfdx=g[:n], dfdu=g[n:], dfdxx=H[:n, :n], dfduu=H[n:, n:], dfdux=H[n:, :n]
        )

    def terminal_quadratic_approximation(self, t, x, mode) -> ScalarFunctionQuadraticApproximation:
        x = np.asarray(x, dtype=float).reshape(-1)
        f, g, H = _fd_quadratic(lambda xx: float(self.terminal_cost(t, xx, mode)), x, self.fd_eps, self.fd_rel)
        return ScalarFunctionQuadraticApproximation(
            f=f, dfdx=g, dfdu=np.zeros(0), dfdxx=H, dfduu=np.zeros((0, 0)), dfdux=np.zeros((0, x.size))
        )

    def clone(self) -> "CostFunction":
        return copy.deepcopy(self)


def _fd_quadratic(fun: Callable[[np.ndarray], float], z: np.ndarray, eps: float, rel: float):
    """Value, central-difference gradient and Hessian of a scalar function."""
    N = z.size
    f0 = fun(z)
    h = np.array([_step(zi, eps, rel) for zi in z])
    g = np.zeros(N)
    H = np.zeros((N, N))
    for i in range(N):
        zp = z.copy()
        zm = z.copy()
        zp[i] += h[i]
        zm[i] -= h[i]
        fp, fm = fun(zp), fun(zm)
        g[i] = (fp - fm) / (2.0 * h[i])
        H[i, i] = (fp - 2.0 * f0 + fm) / (h[i] * h[i])
        for j in range(i):
            zpp = z.copy()
            zpm = z.copy()
            zmp = z.copy()
            zmm = z.copy()
            zpp[i] += h[i]; zpp[j] += h[j]
            zpm[i] += h[i]; zpm[j] -= h[j]
            zmp[i] -= h[i]; zmp[j] += h[j]
            zmm[i] -= h[i]; zmm[j] -= h[j]
            H[i, j] = H[j, i] = (fun(zpp) - fun(zpm) - fun(zmp) + fun(zmm)) / (4.0 * h[i] * h[j])
    return f0, g, _sym(H)


class QuadraticCost(CostFunction):
    """L = 1/2 dx'Q dx + 1/2 du'R du + du'P dx,  Phi = 1/2 (x - x_final)'Q_final (x - x_final).

    dx = x - x_nominal, du = u - u_nominal. Identical in every mode.
    """

    def __init__(self, Q, R, x_nominal, u_nominal, Q_final=None, x_final=None, P=None):
        self.Q = _sym(np.asarray(Q, dtype=float))
        self.R = _sym(np.atleast_2d(np.asarray(R, dtype=float)))
        self.x_nominal = np.asarray(x_nominal, dtype=float).reshape(-1)
        self.u_nominal = np.asarray(u_nominal, dtype=float).reshape(-1)
        n, m = self.Q.shape[0], self.R.shape[0]
        self.P = np.zeros((m, n)) if P is None else np.asarray(P, dtype=float).reshape(m, n)
        self.Q_final = np.zeros((n, n)) if Q_final is None else _sym(np.asarray(Q_final, dtype=float))
        self.x_final = self.x_nominal.copy() if x_final is None else np.asarray(x_final, dtype=float).reshape(-1)

    def cost(self, t, x, u, mode):
        dx = np.asarray(x, dtype=float).reshape(-1) - self.x_nominal
        du = np.asarray(u, dtype=float).reshape(-1) - self.u_nominal
        return float(0.5 * dx @ self.Q @ dx + 0.5 * du @ self.R @ du + du @ self.P @ dx)

    def quadratic_approximation(self, t, x, u, mode):
        dx = np.asarray(x, dtype=float).reshape(-1) - self.x_nominal
        du = np.asarray(u, dtype=float).reshape(-1) - self.u_nominal
        return ScalarFunctionQuadraticApproximation(
            f=self.cost(t, x, u, mode),
            dfdx=self.Q @ dx + self.P.T @ du,
            dfdu=self.R @ du + self.P @ dx,
            dfdxx=self.Q.copy(),
            dfduu=self.R.copy(),
            dfdux=self.P.copy(),
        )

    def terminal_cost(self, t, x, mode):
        e = np.asarray(x, dtype=float).reshape(-1) - self.x_final
        return float(0.5 * e @ self.Q_final @ e)

    def terminal_quadratic_approximation(self, t, x, mode):
        e = np.asarray(x, dtype=float).reshape(-1) - self.x_final
        n = e.size
        return ScalarFunctionQuadraticApproximation(
            f=self.terminal_cost(t, x, mode),
            dfdx=self.Q_final @ e,
            dfdu=np.zeros(0),
            dfdxx=self.Q_final.copy(),
            dfduu=np.zeros((0, 0)),
            dfdux=np.zeros((0, n)),
        )


# =============================================================================
# Constraints
# =============================================================================

class Constraint:
    """Equality constraints.

    type-1 (state-input):  C x + D u + e = 0   -> state_input_equality returns (value, C, D)
    type-2 (state only):   F x + h = 0         -> state_only_equality returns (value, F)

    ``value`` is the constraint evaluated at (t, x, u); C, D, F are its
    Jacobians. The default has no constraints.
    """

    def state_input_equality(self, t, x, u, mode) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        n = np.asarray(x).size
        m = np.asarray(u).size
        return np.zeros(0), np.zeros((0, n)), np.zeros((0, m))

    def state_only_equality(self, t, x, mode) -> Tuple[np.ndarray, np.ndarray]:
        n = np.asarray(x).size
        return np.zeros(0), np.zeros((0, n))

    def clone(self) -> "Constraint":
        return copy.deepcopy(self)


NoConstraint = Constraint


class LinearConstraint(Constraint):
    """Affine constraints C x + D u + e = 0 and F x + h = 0 (same in all modes)."""

    def __init__(self, C=None, D=None, e=None, F=None, h=None):
        self.C = None if C is None else np.atleast_2d(np.asarray(C, dtype=float))
        self.D = None if D is None else np.atleast_2d(np.asarray(D, dtype=float))
        self.e = None if e is None else np.asarray(e, dtype=float).reshape(-1)
        self.F = None if F is None else np.atleast_2d(np.asarray(F, dtype=float))
        self.h = None if h is None else np.asarray(h, dtype=float).reshape(-1)
        if (self.C is None) != (self.D is None):
            raise ValueError("state-input constraint needs both C and D")

    def state_input_equality(self, t, x, u, mode):
        if self.C is None:
            return super().state_input_equality(t, x, u, mode)
        x = np.asarray(x, dtype=float).reshape(-1)
        u = np.asarray(u, dtype=float).reshape(-1)
        e = np.zeros(self.C.shape[0]) if self.e is None else self.e
        return self.C @ x + self.D @ u + e, self.C.copy(), self.D.copy()

    def state_only_equality(self, t, x, mode):
        if self.F is None:
            return super().state_only_equality(t, x, mode)
        x = np.asarray(x, dtype=float).reshape(-1)
        h = np.zeros(self.F.shape[0]) if self.h is None else self.h
        return self.F @ x + h, self.F.copy()


# =============================================================================
# Operating points and problem bundle
# =============================================================================

class OperatingPoints:
    """Constant operating point used to build the initial (feedforward) policy."""

    def __init__(self, state, input):
        self.state = np.asarray(state, dtype=float).reshape(-1)
        self.input = np.asarray(input, dtype=float).reshape(-1)

    def initial_controller(self, t0: float, t1: float) -> Controller:
        return Controller.feedforward([t0, t1], np.vstack([self.input, self.input]))


@dataclass
class OptimalControlProblem:
    dynamics: SystemDynamics
    cost: CostFunction
    constraint: Constraint

    def clone(self) -> "OptimalControlProblem":
        return OptimalControlProblem(
            dynamics=self.dynamics.clone(),
            cost=self.cost.clone(),
            constraint=self.constraint.clone(),
        )
