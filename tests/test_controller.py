import numpy as np
import pytest
from numpy.testing import assert_allclose

from controller import Controller, ControllerType


def _linear():
    time = [0.0, 0.5, 1.0]
    gain = np.arange(3 * 2 * 3, dtype=float).reshape(3, 2, 3)
    bias = np.array([[1.0, -1.0], [2.0, -2.0], [3.0, -3.0]])
    return Controller.linear(time, gain, bias)


def test_linear_compute_input_interpolates():
    c = _linear()
    x = np.array([1.0, 0.0, -1.0])
    u0 = c.bias[0] + c.gain[0] @ x
    u1 = c.bias[1] + c.gain[1] @ x
    assert_allclose(c.compute_input(0.0, x), u0)
    assert_allclose(c(0.25, x), 0.5 * (u0 + u1))
    # end samples are held outside the grid
    assert_allclose(c(-1.0, x), u0)
    assert_allclose(c(5.0, x), c.bias[2] + c.gain[2] @ x)


def test_feedforward_ignores_state():
    c = Controller.feedforward([0.0, 1.0], [[0.0], [2.0]])
    assert_allclose(c(0.5, np.array([100.0, 100.0])), [1.0])
    assert c.gain is None
    assert c.state_dim is None


def test_flatten_layout_and_round_trip():
    c = _linear()
    flat = c.flatten(0.5)
    assert len(flat) == 2 * 3 + 2
    assert_allclose(flat[:6], c.gain[1].reshape(-1))
    assert_allclose(flat[6:], c.bias[1])

    times, arrays = c.flatten_trajectory()
    back = Controller.unflatten(times, arrays, kind=ControllerType.LINEAR, input_dim=2)
    assert back.kind is ControllerType.LINEAR
    assert_allclose(back.time, c.time)
    assert_allclose(back.gain, c.gain)
    assert_allclose(back.bias, c.bias)


def test_unflatten_feedforward_and_size_mismatch():
    ff = Controller.unflatten([0.0, 1.0], [[1.0, 2.0], [3.0, 4.0]], kind=ControllerType.FEEDFORWARD, input_dim=2)
    assert_allclose(ff.bias, [[1.0, 2.0], [3.0, 4.0]])
    with pytest.raises(ValueError):
        Controller.unflatten([0.0, 1.0], [[1.0, 2.0]], kind=ControllerType.FEEDFORWARD, input_dim=2)
    with pytest.raises(ValueError):
        Controller.unflatten([0.0, 1.0], [[1.0, 2.0, 3.0], [1.0]], kind=ControllerType.LINEAR, input_dim=2)


def test_clear_and_set_zero():
    c = _linear()
    z = c.copy()
    z.set_zero()
    assert z.size() == 3
    assert not np.any(z.gain) and not np.any(z.bias)
    assert np.any(c.gain), "copy must not share data"

    c.clear()
    assert c.empty()
    assert c.size() == 0
    assert c.input_dim == 2
    with pytest.raises(ValueError):
        c.compute_input(0.0, np.zeros(3))


def test_concatenate_drops_overlap():
    a = Controller.feedforward([0.0, 0.5, 1.0], [[0.0], [0.0], [0.0]])
    b = Controller.feedforward([1.0, 2.0], [[1.0], [1.0]])
    c = Controller.concatenate([a, b])
    assert_allclose(c.time, [0.0, 0.5, 1.0, 2.0])
    assert_allclose(c(1.0, None), [1.0])
    with pytest.raises(ValueError):
        Controller.concatenate([a, _linear()])


def test_rejects_unsorted_time_and_bad_shapes():
    with pytest.raises(ValueError):
        Controller.feedforward([0.0, 0.0], [[1.0], [2.0]])
    with pytest.raises(ValueError):
        Controller.linear([0.0, 1.0], np.zeros((2, 1, 3)), np.zeros((2, 2)))
    with pytest.raises(ValueError):
        Controller(ControllerType.FEEDFORWARD, time=[0.0], bias=[[1.0]], gain=np.zeros((1, 1, 1)))
