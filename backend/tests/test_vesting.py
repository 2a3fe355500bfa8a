from fractions import Fraction

import pytest

from escrow_claims.vesting import VestingSchedule, compute_vesting, describe, vesting_progress

START = 1_000_000
END = START + 100 * 86400


def schedule(total=100_000, start=START, end=END):
    return VestingSchedule(enabled=True, start=start, end=end, total_eligible=total)


def test_disabled_schedule_is_fully_vested():
    status = compute_vesting(VestingSchedule.disabled(total_eligible=500), now=0)
    assert status.vested_amount == 500
    assert status.completed
    assert status.progress_bps == 10_000


def test_nothing_vested_before_start():
    status = compute_vesting(schedule(), now=START - 1)
    assert status.vested_amount == 0
    assert not status.started
    assert status.remaining_seconds == END - START + 1


def test_half_vested_at_midpoint():
    status = compute_vesting(schedule(), now=(START + END) // 2)
    assert status.vested_amount == 50_000
    assert status.progress == Fraction(1, 2)
    assert status.progress_bps == 5_000
    assert str(status.progress_pct) == "50.00"


def test_fully_vested_at_and_after_end():
    for now in (END, END + 1, END + 10**9):
        status = compute_vesting(schedule(), now=now)
        assert status.vested_amount == 100_000
        assert status.completed
        assert status.remaining_seconds == 0


def test_vested_amount_is_floored():
    # 1/3 of 100 base units is 33.33...
    sched = VestingSchedule(enabled=True, start=0, end=3, total_eligible=100)
    assert compute_vesting(sched, now=1).vested_amount == 33
    assert compute_vesting(sched, now=2).vested_amount == 66


def test_vesting_is_monotonic_and_bounded():
    sched = schedule(total=987_654_321)
    previous = -1
    for now in range(START - 86400, END + 86400, 86400 // 3):
        vested = compute_vesting(sched, now=now).vested_amount
        assert 0 <= vested <= sched.total_eligible
        assert vested >= previous
        previous = vested


def test_zero_length_schedule_vests_at_start():
    sched = VestingSchedule(enabled=True, start=START, end=START, total_eligible=10)
    assert vesting_progress(sched, START - 1) == 0
    assert compute_vesting(sched, now=START).vested_amount == 10


def test_end_before_start_is_rejected():
    with pytest.raises(ValueError):
        VestingSchedule(enabled=True, start=10, end=5, total_eligible=1)


def test_describe():
    assert describe(compute_vesting(schedule(), now=END)) == "fully vested"
    assert describe(compute_vesting(schedule(), now=START - 86400 * 2), now=START - 86400 * 2, start=START) \
        == "vesting starts in 2 days"
    assert "25.00% vested" in describe(compute_vesting(schedule(), now=START + 25 * 86400))
