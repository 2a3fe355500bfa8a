"""
Sender-side escrow writes: topping up funds and adding receivers.

Both go through the allowance orchestrator, since the escrow pulls the
sender's tokens with ``transferFrom``.
"""
import logging
from typing import Optional

from web3 import Web3

from escrow_claims.allowance import AllowanceOrchestrator, SpendOutcome, WriteLocks
from escrow_claims.errors import (
    EscrowEngineError, InvalidAmount, NotActive, WalletNotConnected,
)
from escrow_claims.models import escrow_id_hex, normalize_escrow_id
from escrow_claims.tokens import to_base_units

logger = logging.getLogger(__name__)


class SenderOperations:

    def __init__(self, reconciler, orchestrator: AllowanceOrchestrator, wallet=None, indexer=None,
                 locks: Optional[WriteLocks] = None):
        self.reconciler = reconciler
        self.orchestrator = orchestrator
        self.wallet = wallet
        self.indexer = indexer
        self.locks = locks or WriteLocks()

    async def _owner(self):
        if self.wallet is None:
            raise WalletNotConnected()
        return await self.wallet.get_address()

    async def _sender_room(self, escrow_id, family, owner):
        """Re-read the room from the chain and check the wallet owns it."""
        record = await self.reconciler.reconcile(escrow_id, family=family)
        if not record.room.is_active:
            raise NotActive(f"Escrow {record.room.escrow_id} is not active")
        if record.room.sender.lower() != owner.lower():
            raise EscrowEngineError(
                f"only the escrow sender {record.room.sender} can modify escrow {record.room.escrow_id}",
                wallet=owner,
            )
        return record

    def _amount(self, amount, token):
        required = to_base_units(amount, token)
        if required <= 0:
            raise InvalidAmount("amount must be greater than zero", amount=amount)
        return required

    async def _run(self, owner, record, required, spend_call) -> SpendOutcome:
        contract = self.reconciler.escrows[record.family]
        plan = await self.orchestrator.ensure_spendable(
            owner, contract.address, record.room.token, required, spend_call=spend_call,
        )
        outcome = await self.orchestrator.execute(plan, self.wallet)
        cache = getattr(self.reconciler, "cache", None)
        if cache is not None:
            try:
                cache.invalidate(record.room.escrow_id)
            except Exception:
                logger.exception("Could not invalidate cached escrow %s", record.room.escrow_id)
        return outcome

    async def _save_event(self, event_type, record, outcome, owner, event_data):
        if self.indexer is None:
            return
        try:
            await self.indexer.save_event(
                event_type,
                escrow_id=escrow_id_hex(record.room.escrow_id),
                tx_hash=outcome.spend_tx_hash,
                initiator=owner,
                token=record.room.token.symbol,
                event_data=event_data,
            )
        except Exception as e:
            logger.warning("%s confirmed but the event could not be recorded: %s", event_type, e)

    # ─────────────────────────────────────────────
    # Top up
    # ─────────────────────────────────────────────
    async def top_up(self, escrow_id, amount, family=None) -> SpendOutcome:
        """Deposit ``amount`` (human units) more of the escrow's token."""
        escrow_id = normalize_escrow_id(escrow_id)
        owner = await self._owner()
        async with self.locks(escrow_id, owner):
            record = await self._sender_room(escrow_id, family, owner)
            contract = self.reconciler.escrows[record.family]
            required = self._amount(amount, record.room.token)

            logger.info("Topping up %s with %s %s", record.room.escrow_id, amount, record.room.token.symbol)
            outcome = await self._run(owner, record, required, contract.top_up(escrow_id, required))
            await self._save_event("TOPUP_FUNDS", record, outcome, owner, {"amount": str(int(required))})
            return outcome

    # ─────────────────────────────────────────────
    # Add receiver
    # ─────────────────────────────────────────────
    async def add_receiver(self, escrow_id, receiver, amount, family=None) -> SpendOutcome:
        """Add ``receiver`` with an allocation of ``amount`` (human units), funding it up front."""
        escrow_id = normalize_escrow_id(escrow_id)
        if not isinstance(receiver, str) or not Web3.is_address(receiver):
            raise EscrowEngineError(f"{receiver!r} is not a valid wallet address", receiver=receiver)
        receiver = Web3.to_checksum_address(receiver)

        owner = await self._owner()
        async with self.locks(escrow_id, owner):
            record = await self._sender_room(escrow_id, family, owner)
            if record.receiver(receiver) is not None:
                raise EscrowEngineError(f"{receiver} is already a receiver of escrow {record.room.escrow_id}")
            contract = self.reconciler.escrows[record.family]
            required = self._amount(amount, record.room.token)

            logger.info("Adding receiver %s to %s with %s %s",
                        receiver, record.room.escrow_id, amount, record.room.token.symbol)
            outcome = await self._run(owner, record, required, contract.add_receiver(escrow_id, receiver, required))
            await self._save_event("ADD_RECIPIENTS", record, outcome, owner, {
                "receivers": [receiver],
                "amounts": [str(int(required))],
            })
            return outcome
