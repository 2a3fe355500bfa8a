"""
Escrow data records shared by the engine modules.
"""
import re
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Optional, Union

from hexbytes import HexBytes

from escrow_claims.config import ESCROW_ID_BYTES
from escrow_claims.errors import MalformedEscrowId
from escrow_claims.tokens import BaseUnits, TokenDescriptor

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


def normalize_escrow_id(escrow_id: Union[str, bytes]) -> HexBytes:
    """
    Normalize an escrow id to exactly 32 bytes.

    Strips whitespace and a single ``0x`` prefix, then pads short ids with
    trailing zero bytes. Ids that are empty, not hex, odd-length or wider than
    32 bytes raise :class:`MalformedEscrowId`.
    """
    if isinstance(escrow_id, (bytes, bytearray)):
        raw = bytes(escrow_id)
        if not raw or len(raw) > ESCROW_ID_BYTES:
            raise MalformedEscrowId(
                f"escrow id must be 1..{ESCROW_ID_BYTES} bytes, got {len(raw)}",
                escrow_id=raw.hex(),
            )
        return HexBytes(raw.ljust(ESCROW_ID_BYTES, b"\x00"))

    if not isinstance(escrow_id, str):
        raise MalformedEscrowId(f"escrow id must be a hex string, got {type(escrow_id).__name__}")

    text = escrow_id.strip()
    if text[:2].lower() == "0x":
        text = text[2:]

    if not text or not _HEX_RE.match(text):
        raise MalformedEscrowId(f"escrow id {escrow_id!r} is not hex", escrow_id=escrow_id)
    if len(text) % 2:
        raise MalformedEscrowId(f"escrow id {escrow_id!r} has an odd number of hex digits", escrow_id=escrow_id)
    if len(text) > ESCROW_ID_BYTES * 2:
        raise MalformedEscrowId(
            f"escrow id {escrow_id!r} is {len(text) // 2} bytes, expected at most {ESCROW_ID_BYTES}",
            escrow_id=escrow_id,
        )

    return HexBytes(bytes.fromhex(text.ljust(ESCROW_ID_BYTES * 2, "0")))


def escrow_id_hex(escrow_id) -> str:
    return "0x" + normalize_escrow_id(escrow_id).hex().removeprefix("0x")


def short_address(address: Optional[str]) -> Optional[str]:
    """Display form of an address, ``0x1234...abcd``."""
    if not address or len(address) <= 10:
        return address or None
    return f"{address[:6]}...{address[-4:]}"


@dataclass
class EscrowRoom:
    escrow_id: str
    sender: str
    token: TokenDescriptor
    total_allocated: BaseUnits
    total_deposited: BaseUnits
    total_withdrawn: BaseUnits
    available_balance: BaseUnits
    is_active: bool
    created_at: int
    last_top_up_at: int
    active_receiver_count: int
    receiver_count: int = 0
    sender_name: Optional[str] = None
    source: str = "chain"


@dataclass
class ReceiverAllocation:
    escrow_id: str
    receiver: str
    current_allocation: BaseUnits
    withdrawn: BaseUnits
    is_active: bool
    detail_unavailable: bool = False
    source: str = "chain"

    @property
    def remaining(self) -> int:
        return max(int(self.current_allocation) - int(self.withdrawn), 0)


@dataclass
class ClaimRequest:
    escrow_id: str
    receiver: Optional[str] = None
    amount: Optional[str] = None
    claim_all: bool = False
    family: Optional[str] = None


class ClaimState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    AWAITING_APPROVAL = "awaiting_approval"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def terminal(self):
        return self in (ClaimState.CONFIRMED, ClaimState.FAILED)


@dataclass
class ClaimProgress:
    state: ClaimState
    message: str = ""
    tx_hash: Optional[str] = None
    at: float = field(default_factory=time.time)

    def to_dict(self):
        return {"state": self.state.value, "message": self.message, "tx_hash": self.tx_hash, "at": self.at}


@dataclass
class ClaimResult:
    success: bool
    state: ClaimState
    tx_hash: Optional[str] = None
    approval_tx_hash: Optional[str] = None
    amount: Optional[BaseUnits] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    reasons: List[dict] = field(default_factory=list)
    transitions: List[ClaimProgress] = field(default_factory=list)
    finished_at: float = field(default_factory=time.time)

    def to_dict(self):
        data = asdict(self)
        data["state"] = self.state.value
        data["transitions"] = [t.to_dict() for t in self.transitions]
        data["amount"] = None if self.amount is None else str(int(self.amount))
        return data
