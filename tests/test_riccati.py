import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy.linalg import solve_continuous_are

from errors import RiccatiDivergence
from linearization import PartitionModel, SegmentModel, TerminalModel, approximate_node
from problem import Constraint, LinearSystem, OptimalControlProblem, QuadraticCost, ScalarFunctionQuadraticApproximation
from riccati import ValueFunction, backward_pass, compute_gains, feedback_gains, sweep_partition
from scheduler import WorkerPool
from settings import Settings


A = np.array([[0.0, 1.0], [-2.0, -0.3]])
B = np.array([[0.0], [1.0]])
Q = np.diag([1.0, 0.5])
R = np.array([[0.2]])


def _lti_model(t0=0.0, t1=1.0, n_nodes=11, partition=0):
    problem = OptimalControlProblem(
        LinearSystem([A], [B]),
        QuadraticCost(Q=Q, R=R, x_nominal=np.zeros(2), u_nominal=np.zeros(1)),
        Constraint(),
    )
    nodes = [
        approximate_node(problem, t, np.zeros(2), np.zeros(1), 0, constrained=False)
        for t in np.linspace(t0, t1, n_nodes)
    ]
    return PartitionModel(partition=partition, t0=t0, t1=t1, segments=[SegmentModel.stack(nodes)])


def _care():
    return solve_continuous_are(A, B, Q, R)


def test_stationary_solution_stays_at_care():
    S = _care()
    model = _lti_model()
    sol, handoff = sweep_partition(model, ValueFunction(S, np.zeros(2), 0.0), Settings(abs_tol_ode=1e-10, rel_tol_ode=1e-8))
    seg = sol.segments[0]
    for Sm in seg.Sm:
        assert_allclose(Sm, S, atol=1e-6)
    assert_allclose(handoff.Sm, S, atol=1e-6)

    compute_gains(model, sol)
    K_expected = -np.linalg.solve(R, B.T @ S)
    for K in seg.K:
        assert_allclose(K, K_expected, atol=1e-5)
    assert_allclose(seg.k, 0.0, atol=1e-12)


def test_long_horizon_converges_to_care():
    terminal = TerminalModel(
        time=20.0, mode=0, x=np.zeros(2),
        cost=ScalarFunctionQuadraticApproximation(
            f=0.0, dfdx=np.zeros(2), dfdu=np.zeros(0), dfdxx=np.zeros((2, 2)),
            dfduu=np.zeros((0, 0)), dfdux=np.zeros((0, 2)),
        ),
    )
    models = [_lti_model(10.0 * k, 10.0 * (k + 1), n_nodes=41, partition=k) for k in range(2)]
    with WorkerPool(2) as pool:
        res = backward_pass(models, terminal, Settings(), pool)
    assert_allclose(res.solutions[0].segments[0].Sm[0], _care(), atol=1e-4)
    assert res.predicted_cost == pytest.approx(0.0, abs=1e-12)


def test_constrained_gains_satisfy_constraint():
    rng = np.random.default_rng(0)
    n, m, p = 4, 3, 2
    A_ = rng.standard_normal((n, n))
    B_ = rng.standard_normal((n, m))
    R_ = np.eye(m) + 0.1 * np.ones((m, m))
    P_ = rng.standard_normal((m, n))
    r_ = rng.standard_normal(m)
    C_ = rng.standard_normal((p, n))
    D_ = rng.standard_normal((p, m))
    e_ = rng.standard_normal(p)
    S = rng.standard_normal((n, n))
    Sm = S @ S.T
    Sv = rng.standard_normal(n)

    K, k, _, _ = feedback_gains(A_, B_, R_, P_, r_, C_, D_, e_, Sm, Sv)
    assert_allclose(D_ @ K, -C_, atol=1e-10)
    assert_allclose(D_ @ k, -e_, atol=1e-10)

    K0, k0, G, g = feedback_gains(A_, B_, R_, P_, r_, C_, D_[:0], e_[:0], Sm, Sv)
    assert_allclose(K0, -np.linalg.solve(R_, G))
    assert_allclose(k0, -np.linalg.solve(R_, g))


def test_negative_terminal_value_raises():
    model = _lti_model()
    with pytest.raises(RiccatiDivergence) as info:
        sweep_partition(model, ValueFunction(-np.eye(2), np.zeros(2), 0.0), Settings())
    assert info.value.min_eigenvalue == pytest.approx(-1.0)
    assert info.value.partition == 0
    assert info.value.time == 1.0


def test_loss_of_semi_definiteness_is_reported_where_it_starts():
    model = _lti_model()
    model.segments[0].Q[:] = -np.eye(2)
    with pytest.raises(RiccatiDivergence, match="semi-definiteness") as info:
        sweep_partition(model, ValueFunction(np.zeros((2, 2)), np.zeros(2), 0.0), Settings())
    assert info.value.min_eigenvalue < 0.0
    assert 0.9 < info.value.time < 1.0


def test_stability_check_can_be_disabled():
    model = _lti_model()
    sol, _ = sweep_partition(model, ValueFunction(-0.01 * np.eye(2), np.zeros(2), 0.0),
                             Settings(check_numerical_stability=False))
    assert np.all(np.isfinite(sol.segments[0].Sm))
