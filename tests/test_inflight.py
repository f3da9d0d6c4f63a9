import pytest

from outboxrelay.inflight import InFlightTracker


def test_register_indexes_ids():
    tracker = InFlightTracker()
    tracker.register(100, [1, 2, 3])
    assert all(tracker.tracks(i) for i in (1, 2, 3))
    assert not tracker.tracks(99)
    assert tracker.confirmed_lsn == 0


def test_validate_all_tracked():
    tracker = InFlightTracker()
    tracker.register(100, [1, 2, 3])
    tracker.validate([1, 3])
    assert tracker.tracks(1) and tracker.tracks(3)


def test_validate_unknown_id():
    tracker = InFlightTracker()
    tracker.register(100, [1, 2, 3])
    with pytest.raises(ValueError, match="unknown id 999"):
        tracker.validate([1, 999])


def test_validate_unknown_id_on_empty_tracker():
    with pytest.raises(ValueError, match="unknown"):
        InFlightTracker().validate([5])


def test_validate_rejects_duplicate_ids():
    tracker = InFlightTracker()
    tracker.register(100, [1, 2, 3])
    with pytest.raises(ValueError, match="duplicate id 1"):
        tracker.validate([1, 1])


def test_apply_drains_batch_advances_lsn():
    tracker = InFlightTracker()
    tracker.register(100, [1, 2, 3])
    assert tracker.apply([1, 2, 3]) == (100, True)
    assert tracker.confirmed_lsn == 100
    assert not any(tracker.tracks(i) for i in (1, 2, 3))


def test_apply_partial_head_no_advance():
    tracker = InFlightTracker()
    tracker.register(100, [1, 2, 3])
    assert tracker.apply([1, 3]) == (0, False)
    assert tracker.confirmed_lsn == 0
    assert tracker.apply([2]) == (100, True)


def test_apply_later_batch_does_not_advance_past_undelivered():
    tracker = InFlightTracker()
    tracker.register(100, [1, 2, 3])
    tracker.register(200, [4, 5, 6])
    assert tracker.apply([4, 5, 6]) == (0, False)
    assert tracker.confirmed_lsn == 0
    assert tracker.apply([1, 2, 3]) == (200, True)


def test_advance_idle_bumps_lsn_when_no_batches():
    tracker = InFlightTracker()
    tracker.advance_idle(50)
    assert tracker.confirmed_lsn == 50


def test_advance_idle_noop_when_batches_in_flight():
    tracker = InFlightTracker()
    tracker.register(100, [1, 2])
    tracker.advance_idle(200)
    assert tracker.confirmed_lsn == 0


def test_advance_idle_does_not_regress():
    tracker = InFlightTracker()
    tracker.register(100, [1])
    tracker.apply([1])
    tracker.advance_idle(50)
    assert tracker.confirmed_lsn == 100


def test_advance_idle_works_after_all_batches_drained():
    tracker = InFlightTracker()
    tracker.register(100, [1])
    tracker.apply([1])
    tracker.advance_idle(200)
    assert tracker.confirmed_lsn == 200


def test_apply_cross_batch():
    tracker = InFlightTracker()
    tracker.register(100, [1, 2, 3])
    tracker.register(200, [4, 5, 6])

    _, advanced = tracker.apply([2, 3, 4])
    assert not advanced
    assert tracker.confirmed_lsn == 0

    assert tracker.apply([1]) == (100, True)
    assert tracker.apply([5, 6]) == (200, True)


def test_apply_unknown_id_raises():
    tracker = InFlightTracker()
    tracker.register(100, [1])
    with pytest.raises(ValueError, match="apply unknown id 7"):
        tracker.apply([7])