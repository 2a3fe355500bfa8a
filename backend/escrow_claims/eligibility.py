"""
Claim eligibility rules.

Every rule is evaluated even when an earlier one fails, so callers can show
all the reasons a claim is blocked at once.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from escrow_claims.config import MIN_CLAIM_AMOUNT, MAX_CLAIM_AMOUNT
from escrow_claims.errors import (
    EscrowEngineError, InvalidAmount, NotActive, NothingVested, BelowMinimum, AboveMaximum,
)
from escrow_claims.models import ClaimRequest, EscrowRoom, ReceiverAllocation
from escrow_claims.tokens import BaseUnits, TokenDescriptor, to_base_units, format_amount
from escrow_claims.vesting import VestingSchedule, VestingStatus, compute_vesting, describe

logger = logging.getLogger(__name__)


@dataclass
class EligibilityResult:
    eligible: bool
    token: TokenDescriptor
    claimable: BaseUnits
    available: BaseUnits
    requested: Optional[BaseUnits] = None
    reasons: List[EscrowEngineError] = field(default_factory=list)
    vesting: Optional[VestingStatus] = None

    @property
    def reason_codes(self) -> List[str]:
        return [r.code for r in self.reasons]

    @property
    def message(self) -> str:
        if self.eligible:
            return "Can claim"
        return "; ".join(r.message for r in self.reasons)

    def to_dict(self):
        data = {
            "eligible": self.eligible,
            "token": self.token.symbol,
            "claimable": str(int(self.claimable)),
            "available": str(int(self.available)),
            "requested": None if self.requested is None else str(int(self.requested)),
            "claimable_display": format_amount(self.claimable, self.token),
            "available_display": format_amount(self.available, self.token),
            "reasons": [r.to_dict() for r in self.reasons],
        }
        if self.vesting is not None:
            data["vesting"] = {
                "vested_amount": str(int(self.vesting.vested_amount)),
                "total_eligible": str(int(self.vesting.total_eligible)),
                "progress_bps": self.vesting.progress_bps,
                "remaining_seconds": self.vesting.remaining_seconds,
                "completed": self.vesting.completed,
            }
        return data


class EligibilityEvaluator:

    def __init__(self, min_amount=MIN_CLAIM_AMOUNT, max_amount=MAX_CLAIM_AMOUNT):
        self.min_amount = min_amount
        self.max_amount = max_amount

    def bounds(self, token: TokenDescriptor):
        """Protocol min/max claim in base units of ``token``."""
        return to_base_units(self.min_amount, token), to_base_units(self.max_amount, token)

    def available_to_claim(self, allocation: ReceiverAllocation, vesting: Optional[VestingStatus]) -> int:
        if vesting is not None:
            return int(vesting.vested_amount) - int(allocation.withdrawn)
        return int(allocation.current_allocation) - int(allocation.withdrawn)

    def evaluate(self, room: EscrowRoom, allocation: ReceiverAllocation, request: ClaimRequest,
                 schedule: Optional[VestingSchedule] = None, now=None) -> EligibilityResult:
        token = room.token
        vesting = None
        if schedule is not None and schedule.enabled:
            vesting = compute_vesting(schedule, now)

        available = self.available_to_claim(allocation, vesting)
        min_base, max_base = self.bounds(token)
        reasons = []

        # 1. active
        if not allocation.is_active or not room.is_active:
            which = "Receiver" if not allocation.is_active else "Escrow"
            reasons.append(NotActive(f"{which} is not active"))

        # 2. something to claim
        if available <= 0:
            if vesting is not None and not vesting.completed:
                detail = describe(vesting, now=now, start=schedule.start)
                reasons.append(NothingVested(f"No funds available to claim ({detail})"))
            elif int(allocation.withdrawn) > 0:
                reasons.append(NothingVested("All funds have been withdrawn"))
            else:
                reasons.append(NothingVested())

        available = BaseUnits(max(available, 0))

        # 3./4. bounds
        requested = None
        if request.claim_all:
            # capped at the protocol maximum, so only the minimum can still fail
            requested = BaseUnits(min(available, max_base))
            if requested < min_base:
                reasons.append(self._below_minimum(token))
        else:
            try:
                requested = to_base_units(request.amount if request.amount is not None else "", token)
            except InvalidAmount as e:
                reasons.append(e)
            else:
                if requested < min_base:
                    reasons.append(self._below_minimum(token))
                if requested > max_base:
                    reasons.append(AboveMaximum(
                        f"Maximum claim is {self.max_amount} {token.symbol}", limit=str(self.max_amount)))
                elif requested > available:
                    reasons.append(AboveMaximum(
                        f"Requested {format_amount(requested, token)} {token.symbol} exceeds the "
                        f"available {format_amount(available, token)} {token.symbol}",
                        available=int(available)))

        eligible = not reasons
        result = EligibilityResult(
            eligible=eligible,
            token=token,
            claimable=requested if eligible else BaseUnits(0),
            available=available,
            requested=requested,
            reasons=reasons,
            vesting=vesting,
        )
        logger.debug("Eligibility for %s on %s: %s", allocation.receiver, room.escrow_id, result.reason_codes or "ok")
        return result

    def _below_minimum(self, token):
        return BelowMinimum(f"Minimum claim is {self.min_amount} {token.symbol}", limit=str(self.min_amount))
