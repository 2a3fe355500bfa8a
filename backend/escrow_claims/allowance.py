"""
Balance / allowance / approve sequencing for ERC20 spends.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from escrow_claims.contracts import ContractCall, classify_error
from escrow_claims.errors import (
    EscrowEngineError, InsufficientBalance, ApprovalFailed, WalletNotConnected,
    WithdrawalReverted,
)
from escrow_claims.models import escrow_id_hex
from escrow_claims.tokens import BaseUnits, TokenDescriptor, to_human_units

logger = logging.getLogger(__name__)


class WriteLocks:
    """
    One ``asyncio.Lock`` per (escrow, address) pair.

    Holding the lock from the fresh read to the terminal state keeps a single
    engine from issuing two writes for the same pair at once.
    """

    def __init__(self):
        self._locks = {}

    def __call__(self, escrow_id, address) -> asyncio.Lock:
        key = (escrow_id_hex(escrow_id), address.lower())
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock


@dataclass
class SpendPlan:
    owner: str
    spender: str
    token: TokenDescriptor
    required: BaseUnits
    balance: Optional[int]
    allowance: Optional[int]
    spend_call: Optional[ContractCall]
    approval_call: Optional[ContractCall] = None

    @property
    def needs_approval(self) -> bool:
        return self.approval_call is not None

    @property
    def calls(self) -> List[ContractCall]:
        """The on-chain calls in the order they must be sent."""
        return [c for c in (self.approval_call, self.spend_call) if c is not None]


@dataclass
class SpendOutcome:
    plan: SpendPlan
    approval_tx_hash: Optional[str] = None
    spend_tx_hash: Optional[str] = None
    receipts: List[dict] = field(default_factory=list)


class AllowanceOrchestrator:
    """
    Plans and runs approve-then-spend sequences.

    Balance and allowance are read fresh for every plan; nothing is cached
    between calls because other approvals can change them at any time.
    """

    def __init__(self, token_contracts, confirmation_timeout=None):
        # symbol -> TokenContract
        self.token_contracts = token_contracts
        self.confirmation_timeout = confirmation_timeout

    def _token_contract(self, token):
        try:
            return self.token_contracts[token.symbol]
        except KeyError:
            raise EscrowEngineError(f"no token contract configured for {token.symbol}")

    async def ensure_spendable(self, owner, spender, token: TokenDescriptor, required,
                               spend_call: Optional[ContractCall] = None, check_balance=True) -> SpendPlan:
        required = BaseUnits(int(required))
        erc20 = self._token_contract(token)

        balance = await erc20.balance_of(owner) if check_balance else None
        if balance is not None and balance < required:
            shortfall = required - balance
            raise InsufficientBalance(
                f"Insufficient {token.symbol} balance: short by "
                f"{to_human_units(shortfall, token)} {token.symbol} "
                f"(required {to_human_units(required, token)}, available {to_human_units(balance, token)})",
                shortfall=shortfall, token=token.symbol,
            )

        allowance = await erc20.allowance(owner, spender)
        plan = SpendPlan(
            owner=owner, spender=spender, token=token, required=required,
            balance=balance, allowance=allowance, spend_call=spend_call,
        )
        if allowance < required:
            # approve exactly what this operation needs, never unlimited
            plan.approval_call = erc20.approve(spender, required)
            logger.info("Approval needed: allowance %s < required %s %s", allowance, required, token.symbol)
        else:
            logger.debug("Allowance already sufficient: %s >= %s", allowance, required)
        return plan

    async def _confirm(self, wallet, tx_hash):
        receipt = await wallet.wait_for_receipt(tx_hash, timeout=self.confirmation_timeout)
        return receipt, receipt.get("status") == 1

    async def run_approval(self, plan: SpendPlan, wallet, outcome: Optional[SpendOutcome] = None) -> SpendOutcome:
        outcome = outcome or SpendOutcome(plan=plan)
        if not plan.needs_approval:
            return outcome
        if wallet is None:
            raise WalletNotConnected()

        try:
            tx_hash = await wallet.sign_and_send(plan.approval_call)
            outcome.approval_tx_hash = tx_hash
            receipt, ok = await self._confirm(wallet, tx_hash)
        except WalletNotConnected:
            raise
        except Exception as e:
            cause = classify_error(e, "approve")
            raise ApprovalFailed(f"Approval failed: {cause.message}", cause=cause.code) from e

        outcome.receipts.append(receipt)
        if not ok:
            raise ApprovalFailed(f"ERC20.approve(...) reverted (tx {tx_hash})", tx_hash=tx_hash)

        # double-check the allowance actually landed before spending
        current = await self._token_contract(plan.token).allowance(plan.owner, plan.spender)
        if current < plan.required:
            raise ApprovalFailed(
                f"Allowance was not set correctly: {current} < {plan.required}",
                tx_hash=tx_hash,
            )
        logger.info("Approved %s %s for %s (tx %s)", plan.required, plan.token.symbol, plan.spender, tx_hash)
        return outcome

    async def run_spend(self, plan: SpendPlan, wallet, outcome: Optional[SpendOutcome] = None) -> SpendOutcome:
        outcome = outcome or SpendOutcome(plan=plan)
        if plan.spend_call is None:
            return outcome
        if wallet is None:
            raise WalletNotConnected()

        try:
            tx_hash = await wallet.sign_and_send(plan.spend_call)
        except Exception as e:
            raise classify_error(e, plan.spend_call.function) from e
        outcome.spend_tx_hash = tx_hash

        try:
            receipt, ok = await self._confirm(wallet, tx_hash)
        except Exception as e:
            raise classify_error(e, plan.spend_call.function) from e

        outcome.receipts.append(receipt)
        if not ok:
            raise WithdrawalReverted(
                f"{plan.spend_call.function} reverted (tx {tx_hash})", tx_hash=tx_hash,
            )
        return outcome

    async def execute(self, plan: SpendPlan, wallet) -> SpendOutcome:
        """Send the plan's calls strictly in order, each confirmed before the next."""
        outcome = await self.run_approval(plan, wallet)
        return await self.run_spend(plan, wallet, outcome)
