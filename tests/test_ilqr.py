import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy.linalg import solve_continuous_are

from errors import RiccatiDivergence
from ilqr import backward_pass_discrete, sweep_partition_discrete
from linearization import PartitionModel, SegmentModel, TerminalModel, approximate_node
from problem import (
    Constraint,
    LinearConstraint,
    LinearSystem,
    OptimalControlProblem,
    QuadraticCost,
    ScalarFunctionQuadraticApproximation,
)
from riccati import ValueFunction
from scheduler import WorkerPool
from settings import Settings


A = np.array([[0.0, 1.0], [-2.0, -0.3]])
B = np.array([[0.0], [1.0]])
Q = np.diag([1.0, 0.5])
R = np.array([[0.2]])


def _model(problem, t0, t1, n_nodes, partition=0, constrained=False):
    n, m = problem.dynamics.B[0].shape
    nodes = [
        approximate_node(problem, t, np.zeros(n), np.zeros(m), 0, constrained=constrained)
        for t in np.linspace(t0, t1, n_nodes)
    ]
    return PartitionModel(partition=partition, t0=t0, t1=t1, segments=[SegmentModel.stack(nodes)])


def _lti_problem():
    return OptimalControlProblem(
        LinearSystem([A], [B]),
        QuadraticCost(Q=Q, R=R, x_nominal=np.zeros(2), u_nominal=np.zeros(1)),
        Constraint(),
    )


def _zero_terminal(time, n=2):
    return TerminalModel(
        time=time, mode=0, x=np.zeros(n),
        cost=ScalarFunctionQuadraticApproximation(
            f=0.0, dfdx=np.zeros(n), dfdu=np.zeros(0), dfdxx=np.zeros((n, n)),
            dfduu=np.zeros((0, 0)), dfdux=np.zeros((0, n)),
        ),
    )


def test_discrete_sweep_approaches_care_for_small_steps():
    problem = _lti_problem()
    models = [_model(problem, 5.0 * k, 5.0 * (k + 1), 5001, partition=k) for k in range(2)]
    with WorkerPool(2) as pool:
        res = backward_pass_discrete(models, _zero_terminal(10.0), Settings(), pool)

    S = solve_continuous_are(A, B, Q, R)
    seg = res.solutions[0].segments[0]
    assert_allclose(seg.Sm[0], S, rtol=1e-2, atol=1e-3)
    assert_allclose(seg.K[0], -np.linalg.solve(R, B.T @ S), rtol=1e-2, atol=1e-3)
    assert res.predicted_cost == pytest.approx(0.0, abs=1e-12)
    starts = [key[1] for ev, key, _ in res.trace if ev == "start"]
    assert starts == [1, 0]


def test_discrete_sweep_hands_value_across_partitions():
    problem = _lti_problem()
    whole = _model(problem, 0.0, 1.0, 101)
    first, second = _model(problem, 0.0, 0.5, 51), _model(problem, 0.5, 1.0, 51, partition=1)
    terminal = ValueFunction(np.eye(2), np.ones(2), 1.0)

    sol, start = sweep_partition_discrete(whole, terminal, Settings())
    _, mid = sweep_partition_discrete(second, terminal, Settings())
    _, chained = sweep_partition_discrete(first, mid, Settings())
    assert_allclose(chained.Sm, start.Sm, rtol=1e-12)
    assert_allclose(chained.Sv, start.Sv, rtol=1e-12)
    assert chained.s == pytest.approx(start.s, rel=1e-12)
    assert_allclose(sol.segments[0].Sm[0], start.Sm)


def test_discrete_gains_satisfy_state_input_constraint():
    problem = OptimalControlProblem(
        LinearSystem([np.array([[0.0, 1.0], [0.0, 0.0]])], [np.eye(2)]),
        QuadraticCost(Q=np.eye(2), R=np.eye(2), x_nominal=np.ones(2), u_nominal=np.zeros(2)),
        LinearConstraint(C=[[0.5, 0.0]], D=[[1.0, 1.0]], e=[-0.2]),
    )
    model = _model(problem, 0.0, 1.0, 21, constrained=True)
    sol, _ = sweep_partition_discrete(model, ValueFunction(np.eye(2), np.zeros(2), 0.0), Settings())
    seg = sol.segments[0]
    D = np.array([[1.0, 1.0]])
    for K, k in zip(seg.K, seg.k):
        assert_allclose(D @ K, [[-0.5, 0.0]], atol=1e-10)
        assert_allclose(D @ k, [0.2], atol=1e-10)


def test_discrete_sweep_reports_lost_semi_definiteness():
    model = _model(_lti_problem(), 0.0, 1.0, 11)
    model.segments[0].Q[:] = -np.eye(2)
    with pytest.raises(RiccatiDivergence, match="semi-definiteness") as info:
        sweep_partition_discrete(model, ValueFunction(np.zeros((2, 2)), np.zeros(2), 0.0), Settings())
    assert info.value.min_eigenvalue < 0.0
    assert info.value.time == pytest.approx(0.9)
