import pytest

from leadscout.engine.dedup import Decision, SmartStopTracker


def _feed(tracker, flags):
    decisions = []
    for i, flag in enumerate(flags):
        decisions.append(tracker.observe(("mynavi", str(i)), flag))
    return decisions


def test_stops_exactly_at_threshold():
    tracker = SmartStopTracker(threshold=50)

    decisions = _feed(tracker, [False] * 60)

    assert decisions.index(Decision.STOP) == 49
    assert tracker.triggered
    assert tracker.consecutive >= 50


def test_new_or_changed_resets_counter():
    tracker = SmartStopTracker(threshold=3)

    decisions = _feed(tracker, [False, False, True, False, False])

    assert Decision.STOP not in decisions
    assert tracker.consecutive == 2
    assert tracker.duplicates == 4


def test_disabled_tracker_never_stops():
    tracker = SmartStopTracker(threshold=2, enabled=False)

    assert Decision.STOP not in _feed(tracker, [False] * 10)
    assert tracker.consecutive == 10


def test_threshold_must_be_positive():
    with pytest.raises(ValueError):
        SmartStopTracker(threshold=0)
