import json

import pytest

from errors import InvalidConfigurationError
from settings import Settings


def test_defaults_are_valid():
    s = Settings()
    assert s.n_threads == 1
    assert s.ls_stepsize_greedy
    assert s.no_state_constraints


def test_from_dict_accepts_camel_case():
    s = Settings.from_dict({
        "absTolODE": 1e-8,
        "relTolODE": 1e-5,
        "nThreads": 3,
        "maxNumIterations": 4,
        "lsStepsizeGreedy": False,
        "minRelConstraint1ISE": 1e-4,
        "maxNumStepsPerSecond": 1000,
        "displayInfo_": True,
        "maxTimeStep": 1e-3,
    })
    assert s.abs_tol_ode == 1e-8
    assert s.rel_tol_ode == 1e-5
    assert s.n_threads == 3
    assert s.max_num_iterations == 4
    assert s.ls_stepsize_greedy is False
    assert s.min_rel_constraint1_ise == 1e-4
    assert s.max_num_steps_per_second == 1000
    assert s.display_info is True
    assert s.max_time_step == 1e-3


def test_from_dict_rejects_unknown_key():
    with pytest.raises(InvalidConfigurationError, match="unknown option"):
        Settings.from_dict({"notAnOption": 1})


def test_load_nested_json(tmp_path):
    path = tmp_path / "slq.json"
    path.write_text(json.dumps({"slq": {"nThreads": 2, "min_rel_cost": 1e-4}}))
    s = Settings.load(str(path))
    assert s.n_threads == 2
    assert s.min_rel_cost == 1e-4


@pytest.mark.parametrize("bad", [
    dict(n_threads=0),
    dict(abs_tol_ode=0.0),
    dict(max_num_iterations=-1),
    dict(min_learning_rate=2.0),
    dict(line_search_contraction_rate=1.0),
    dict(riccati_method="Euler"),
    dict(algorithm="ddp"),
    dict(max_time_step=0.0),
    dict(state_constraint_penalty_base=0.5),
])
def test_invalid_settings(bad):
    with pytest.raises(InvalidConfigurationError):
        Settings(**bad)


def test_replace_validates():
    s = Settings().replace(n_threads=4)
    assert s.n_threads == 4
    with pytest.raises(InvalidConfigurationError):
        s.replace(n_threads=-1)
    assert s.to_dict()["n_threads"] == 4
