"""
Escrow Claims - evaluate, reconcile and settle token escrow claims.

The engine reads escrow state from the chain (falling back to the indexer),
decides what a receiver may claim under the vesting schedule and protocol
bounds, and drives the approve / withdraw transactions through a wallet.
"""

from .engine import ClaimEngine
from .errors import EscrowEngineError
from .models import ClaimRequest, ClaimResult, ClaimState, normalize_escrow_id
from .tokens import BaseUnits, TokenRegistry, default_registry, to_base_units, to_human_units

__version__ = "0.1.0"
__all__ = [
    "ClaimEngine",
    "ClaimRequest",
    "ClaimResult",
    "ClaimState",
    "EscrowEngineError",
    "BaseUnits",
    "TokenRegistry",
    "default_registry",
    "to_base_units",
    "to_human_units",
    "normalize_escrow_id",
]
