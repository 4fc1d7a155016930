import numpy as np
import pytest
from numpy.testing import assert_allclose

from controller import ControllerType
from errors import InvalidConfigurationError, SolverState, SolverStatus
from problem import FunctionDynamics, OperatingPoints, QuadraticCost
from settings import Settings
from solver import SLQSolver
from systems import make_constrained_point_mass, make_exp0, make_pendulum


EXP0_COST = 9.7667
EXP0_TOL = 5e-3


def _solve(case, boundaries=None, **overrides):
    settings = Settings(**{**case.settings_overrides, **overrides})
    solver = SLQSolver(
        case.dynamics, case.cost, case.operating_points,
        settings=settings, mode_schedule=case.mode_schedule, constraint=case.constraint,
    )
    boundaries = case.partitions if boundaries is None else boundaries
    controller, perf = solver.run(case.start_time, case.x0, case.final_time, boundaries)
    return solver, controller, perf


# =============================================================================
# EXP0 (switched LQ)
# =============================================================================

def test_exp0_single_thread():
    solver, controller, perf = _solve(make_exp0())
    assert solver.status.converged
    assert solver.state is SolverState.CONVERGED
    assert perf.total_cost == pytest.approx(EXP0_COST, abs=EXP0_TOL)
    assert perf.constraint1_ise == 0.0
    assert perf.constraint2_ise == 0.0
    assert controller.kind is ControllerType.LINEAR
    assert solver.state_trace[0] is SolverState.INITIALIZING
    assert solver.state_trace[1:4] == [SolverState.BUILDING_MODEL, SolverState.BACKWARD_PASS, SolverState.FORWARD_PASS]


def test_exp0_thread_count_does_not_change_result():
    _, _, single = _solve(make_exp0(), n_threads=1)
    _, _, multi = _solve(make_exp0(), n_threads=4)
    assert multi.total_cost == pytest.approx(single.total_cost, abs=1e-9)


def test_exp0_exhaustive_line_search_multi_thread():
    solver, _, perf = _solve(make_exp0(), n_threads=3, ls_stepsize_greedy=False)
    assert solver.status.converged
    assert perf.total_cost == pytest.approx(EXP0_COST, abs=EXP0_TOL)


@pytest.mark.parametrize("n_threads", [1, 4])
@pytest.mark.parametrize("boundaries", [
    [0.0, 2.0],
    [0.0, 1.0, 2.0],
    [0.0, 0.1897, 2.0],
    [0.0, 0.1897, 1.0, 2.0],
    [0.0, 0.5, 1.0, 1.5, 2.0],
])
def test_exp0_partitioning_does_not_change_result(boundaries, n_threads):
    solver, _, perf = _solve(make_exp0(), boundaries=boundaries, n_threads=n_threads)
    assert solver.status.converged
    assert perf.total_cost == pytest.approx(EXP0_COST, abs=EXP0_TOL)


@pytest.mark.parametrize("n_threads", [1, 3])
def test_exp0_ilqr(n_threads):
    solver, controller, perf = _solve(make_exp0(), algorithm="ilqr", n_threads=n_threads)
    assert solver.status.converged
    assert perf.total_cost == pytest.approx(EXP0_COST, abs=EXP0_TOL)
    assert perf.constraint1_ise == 0.0
    assert controller.kind is ControllerType.LINEAR


def test_exp0_ilqr_matches_slq_across_partitionings():
    _, _, slq = _solve(make_exp0())
    _, _, ilqr = _solve(make_exp0(), boundaries=[0.0, 0.5, 1.0, 1.5, 2.0], algorithm="ilqr", n_threads=2)
    assert ilqr.total_cost == pytest.approx(slq.total_cost, abs=EXP0_TOL)


def test_exp0_backward_trace_runs_partitions_last_to_first():
    solver, _, _ = _solve(make_exp0(), boundaries=[0.0, 0.1897, 0.7, 1.3, 2.0], n_threads=4)
    starts = [key[1] for ev, key, _ in solver.last_backward_trace if ev == "start" and key[0] == "riccati"]
    assert starts == [3, 2, 1, 0]


def test_history_is_monotonic():
    solver, _, _ = _solve(make_exp0())
    merits = [r["merit"] for r in solver.iteration_history()]
    assert len(merits) >= 2
    assert all(b <= a for a, b in zip(merits, merits[1:]))
    frame = solver.history_frame()
    assert list(frame["iteration"])[0] == 0
    assert {"total_cost", "constraint1_ise", "alpha", "time_rollout"} <= set(frame.columns)


def test_zero_iterations_returns_initial_policy():
    solver, controller, perf = _solve(make_exp0(), max_num_iterations=0)
    assert solver.status is SolverStatus.MAX_ITERATIONS
    assert solver.state_trace == [SolverState.INITIALIZING, SolverState.CONVERGED]
    assert controller.kind is ControllerType.FEEDFORWARD
    assert_allclose(controller(1.0, np.zeros(2)), [0.0])
    assert perf.total_cost > EXP0_COST


# =============================================================================
# Failure handling
# =============================================================================

def _nan_after_one():
    A = np.array([[0.0, 1.0], [0.0, 0.0]])
    B = np.array([[0.0], [1.0]])

    def f(t, x, u, mode):
        if t >= 1.0 and np.any(np.asarray(u) != 0.0):
            return np.full(2, np.nan)
        return A @ x + B @ np.asarray(u).reshape(-1)

    return FunctionDynamics(f, jacobian=lambda t, x, u, mode: (A, B))


def test_diverging_candidates_keep_initial_policy():
    cost = QuadraticCost(Q=np.eye(2), R=[[1.0]], x_nominal=np.zeros(2), u_nominal=np.zeros(1),
                         Q_final=10.0 * np.eye(2), x_final=np.array([1.0, 0.0]))
    solver = SLQSolver(_nan_after_one(), cost, OperatingPoints(np.zeros(2), np.zeros(1)))
    baseline = SLQSolver(_nan_after_one(), cost, OperatingPoints(np.zeros(2), np.zeros(1)),
                         settings=Settings(max_num_iterations=0))
    _, base_perf = baseline.run(0.0, [0.0, 0.0], 2.0, [0.0, 1.0, 2.0])

    controller, perf = solver.run(0.0, [0.0, 0.0], 2.0, [0.0, 1.0, 2.0])
    assert solver.status is SolverStatus.INTEGRATION_DIVERGENCE
    assert solver.state is SolverState.FAILED
    assert not solver.status.converged
    assert solver.failure is not None
    assert controller.kind is ControllerType.FEEDFORWARD
    assert perf.total_cost == pytest.approx(base_perf.total_cost)


@pytest.mark.parametrize("algorithm", ["slq", "ilqr"])
def test_negative_cost_reports_riccati_divergence(algorithm):
    A = np.array([[0.0, 1.0], [0.0, 0.0]])
    B = np.array([[0.0], [1.0]])
    cost = QuadraticCost(Q=-np.eye(2), R=[[1.0]], x_nominal=np.ones(2), u_nominal=np.zeros(1))
    solver = SLQSolver(FunctionDynamics(lambda t, x, u, mode: A @ x + B @ u, jacobian=lambda *a: (A, B)),
                       cost, OperatingPoints(np.zeros(2), np.zeros(1)), settings=Settings(algorithm=algorithm))
    controller, _ = solver.run(0.0, [0.0, 0.0], 1.0, [0.0, 1.0])
    assert solver.status is SolverStatus.RICCATI_DIVERGENCE
    assert solver.failure.min_eigenvalue < 0.0
    assert 0.0 <= solver.failure.time < 1.0
    assert controller.kind is ControllerType.FEEDFORWARD


def test_bad_jacobian_reports_model_failure():
    cost = QuadraticCost(Q=np.eye(1), R=[[1.0]], x_nominal=np.zeros(1), u_nominal=np.zeros(1))
    dyn = FunctionDynamics(lambda t, x, u, mode: -x + u, jacobian=lambda *a: (np.full((1, 1), np.inf), np.eye(1)))
    solver = SLQSolver(dyn, cost, OperatingPoints(np.zeros(1), np.zeros(1)))
    solver.run(0.0, [1.0], 1.0, [0.0, 1.0])
    assert solver.status is SolverStatus.MODEL_FAILURE
    assert len(solver.failure.failures) > 0


@pytest.mark.parametrize("start,x0,final,boundaries", [
    (0.0, [0.0, 2.0], 2.0, [0.0, 1.0]),
    (0.0, [0.0, 2.0], 2.0, [0.0, 1.0, 1.0, 2.0]),
    (2.0, [0.0, 2.0], 1.0, [2.0, 1.0]),
    (0.0, [np.nan, 2.0], 2.0, [0.0, 2.0]),
])
def test_invalid_configuration_raises_before_work(start, x0, final, boundaries):
    case = make_exp0()
    solver = SLQSolver(case.dynamics, case.cost, case.operating_points, mode_schedule=case.mode_schedule)
    with pytest.raises(InvalidConfigurationError):
        solver.run(start, x0, final, boundaries)
    assert solver.status is SolverStatus.NOT_STARTED
    assert solver.controller() is None


# =============================================================================
# Constrained and nonlinear problems
# =============================================================================

def test_constrained_point_mass_satisfies_constraint():
    solver, controller, perf = _solve(make_constrained_point_mass(), n_threads=2)
    assert solver.status.converged
    history = solver.iteration_history()
    assert history[0]["constraint1_ise"] == pytest.approx(0.04 * 2.0)
    assert perf.constraint1_ise < 1e-8
    assert perf.total_cost < history[0]["total_cost"]
    for traj in solver.nominal_trajectories():
        for _, _, t, x, u in traj.samples():
            assert u[0] + u[1] == pytest.approx(0.2, abs=1e-6)


def test_pendulum_cost_decreases():
    solver, _, perf = _solve(make_pendulum(), n_threads=2)
    assert solver.status.converged
    history = solver.iteration_history()
    assert perf.total_cost < 0.5 * history[0]["total_cost"]
    merits = [r["merit"] for r in history]
    assert all(b <= a for a, b in zip(merits, merits[1:]))
