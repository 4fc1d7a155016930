import pytest

from errors import InvalidConfigurationError
from schedule import ModeSchedule, PartitionSchedule


def test_mode_schedule_is_right_continuous():
    ms = ModeSchedule([1.0, 2.0], [3, 5, 7])
    assert ms.mode_at(0.5) == 3
    assert ms.mode_at(1.0) == 5
    assert ms.mode_at(1.999) == 5
    assert ms.mode_at(2.0) == 7
    assert ms.mode_at(10.0) == 7


def test_mode_schedule_segments():
    ms = ModeSchedule.from_switching_times([0.5, 1.5])
    assert ms.mode_sequence == (0, 1, 2)
    assert ms.segments(0.0, 1.0) == [(0.0, 0.5, 0), (0.5, 1.0, 1)]
    # an event on the boundary does not split the interval
    assert ms.segments(0.5, 1.5) == [(0.5, 1.5, 1)]
    assert ms.events_between(0.0, 2.0) == [0.5, 1.5]


def test_mode_schedule_validation():
    with pytest.raises(InvalidConfigurationError):
        ModeSchedule([1.0], [0])
    with pytest.raises(InvalidConfigurationError):
        ModeSchedule([2.0, 1.0], [0, 1, 2])


def test_partition_schedule():
    ps = PartitionSchedule([0.0, 0.5, 2.0])
    assert ps.num_partitions == 2
    assert ps.intervals() == [(0.0, 0.5), (0.5, 2.0)]
    assert ps.find(0.0) == 0
    assert ps.find(0.5) == 1
    assert ps.find(2.0) == 1
    ps.validate_horizon(0.0, 2.0)
    with pytest.raises(InvalidConfigurationError):
        ps.validate_horizon(0.0, 3.0)


@pytest.mark.parametrize("boundaries", [[0.0], [0.0, 0.0], [0.0, 2.0, 1.0], [0.0, float("nan")]])
def test_partition_schedule_rejects(boundaries):
    with pytest.raises(InvalidConfigurationError):
        PartitionSchedule(boundaries)
