"""
Linear vesting math.

All functions here are pure: the same (schedule, now) always yields the same
result, and nothing reads the clock unless the caller passes ``now=None``.
"""
import time
from dataclasses import dataclass
from decimal import Decimal
from fractions import Fraction

from escrow_claims.tokens import BaseUnits

BPS = 10_000


@dataclass(frozen=True)
class VestingSchedule:
    enabled: bool
    start: int
    end: int
    total_eligible: int

    def __post_init__(self):
        if self.enabled and self.end < self.start:
            raise ValueError(f"vesting end {self.end} is before start {self.start}")
        if self.total_eligible < 0:
            raise ValueError("vesting total cannot be negative")

    @property
    def duration(self) -> int:
        return max(self.end - self.start, 0)

    @classmethod
    def disabled(cls, total_eligible=0):
        return cls(enabled=False, start=0, end=0, total_eligible=total_eligible)


@dataclass(frozen=True)
class VestingStatus:
    vested_amount: BaseUnits
    total_eligible: BaseUnits
    progress: Fraction
    remaining_seconds: int
    started: bool
    completed: bool

    @property
    def progress_bps(self) -> int:
        """Progress in basis points (10000 = fully vested), floored."""
        return int(self.progress * BPS)

    @property
    def progress_pct(self) -> Decimal:
        return (Decimal(self.progress.numerator) * 100 / Decimal(self.progress.denominator)).quantize(Decimal("0.01"))

    @property
    def unvested_amount(self) -> BaseUnits:
        return BaseUnits(self.total_eligible - self.vested_amount)


def vesting_progress(schedule: VestingSchedule, now: int) -> Fraction:
    if not schedule.enabled:
        return Fraction(1)
    if now >= schedule.end:
        return Fraction(1)
    if now <= schedule.start:
        return Fraction(0)
    return Fraction(now - schedule.start, schedule.end - schedule.start)


def compute_vesting(schedule: VestingSchedule, now=None) -> VestingStatus:
    """Vested amount, progress and remaining time for ``schedule`` at ``now``."""
    now = int(time.time()) if now is None else int(now)
    progress = vesting_progress(schedule, now)

    # floor(total * progress) with exact integer math
    vested = (schedule.total_eligible * progress.numerator) // progress.denominator

    if not schedule.enabled:
        return VestingStatus(
            vested_amount=BaseUnits(schedule.total_eligible),
            total_eligible=BaseUnits(schedule.total_eligible),
            progress=progress,
            remaining_seconds=0,
            started=True,
            completed=True,
        )

    return VestingStatus(
        vested_amount=BaseUnits(vested),
        total_eligible=BaseUnits(schedule.total_eligible),
        progress=progress,
        remaining_seconds=max(schedule.end - now, 0),
        started=now >= schedule.start,
        completed=progress == 1,
    )


def describe(status: VestingStatus, now=None, start=None) -> str:
    """Short human description, used for ineligibility messages."""
    if status.completed:
        return "fully vested"
    if not status.started and start is not None and now is not None:
        days = -(-(start - now) // 86400)
        return f"vesting starts in {days} days"
    return f"vesting in progress ({status.progress_pct}% vested)"
