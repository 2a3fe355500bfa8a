"""
Escrow reconciliation - merge live contract reads with indexer summaries.

Precedence is fixed: a value read from the chain always wins. Indexer values
fill in only where the chain read failed, or where the chain has no such
field (the sender's display name). A receiver whose detail read fails is kept
and flagged ``detail_unavailable``, never dropped.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from escrow_claims.config import CHAIN_ID
from escrow_claims.errors import (
    EscrowEngineError, EscrowNotFound, NetworkUnavailable, UnknownToken,
)
from escrow_claims.models import (
    EscrowRoom, ReceiverAllocation, escrow_id_hex, normalize_escrow_id, short_address,
)
from escrow_claims.tokens import BaseUnits, format_amount
from escrow_claims.vesting import VestingSchedule

logger = logging.getLogger(__name__)


@dataclass
class ReconciledEscrow:
    room: EscrowRoom
    receivers: List[ReceiverAllocation]
    family: str
    vesting: Optional[object] = None
    vesting_unavailable: bool = False
    fetched_at: float = field(default_factory=time.time)

    def receiver(self, address) -> Optional[ReceiverAllocation]:
        address = address.lower()
        return next((r for r in self.receivers if r.receiver.lower() == address), None)

    def schedule_for(self, allocation: ReceiverAllocation) -> Optional[VestingSchedule]:
        if self.vesting is None or not self.vesting.enabled:
            return None
        return VestingSchedule(
            enabled=True,
            start=int(self.vesting.start),
            end=int(self.vesting.end),
            total_eligible=int(allocation.current_allocation),
        )

    @property
    def partial(self) -> bool:
        return (self.room.source != "chain" or self.vesting_unavailable
                or any(r.detail_unavailable for r in self.receivers))

    def age(self, now=None) -> float:
        return (time.time() if now is None else now) - self.fetched_at

    def is_stale(self, max_age, now=None) -> bool:
        return self.age(now) > max_age

    def to_dict(self):
        room, token = self.room, self.room.token
        return {
            "escrow_id": room.escrow_id,
            "family": self.family,
            "sender": room.sender,
            "sender_name": room.sender_name,
            "token": token.symbol,
            "total_allocated": str(int(room.total_allocated)),
            "total_deposited": str(int(room.total_deposited)),
            "total_withdrawn": str(int(room.total_withdrawn)),
            "available_balance": str(int(room.available_balance)),
            "available_display": format_amount(room.available_balance, token),
            "created_at": room.created_at,
            "source": room.source,
            "fetched_at": self.fetched_at,
            "partial": self.partial,
            "vesting_enabled": bool(self.vesting and self.vesting.enabled),
            "receivers": [
                {
                    "receiver": r.receiver,
                    "current_allocation": str(int(r.current_allocation)),
                    "withdrawn": str(int(r.withdrawn)),
                    "is_active": r.is_active,
                    "detail_unavailable": r.detail_unavailable,
                }
                for r in self.receivers
            ],
        }


@dataclass
class ReconcileBatch:
    records: List[ReconciledEscrow] = field(default_factory=list)
    failures: Dict[str, EscrowEngineError] = field(default_factory=dict)
    indexer_available: bool = True

    def to_dict(self):
        return {
            "indexer_available": self.indexer_available,
            "escrows": [r.to_dict() for r in self.records],
            "failures": {k: v.to_dict() for k, v in self.failures.items()},
        }


class EscrowReconciler:

    def __init__(self, escrows, registry, indexer=None, cache=None, chain_id=CHAIN_ID):
        # family name -> EscrowContract
        self.escrows = escrows
        self.registry = registry
        self.indexer = indexer
        self.cache = cache
        self.chain_id = chain_id

    # ─────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────
    def _families(self, family=None):
        if family is None:
            return list(self.escrows.items())
        if family not in self.escrows:
            raise EscrowEngineError(f"unknown escrow family {family}")
        return [(family, self.escrows[family])]

    def _token(self, token_address, family, summary=None):
        for candidate in (token_address, summary.token_address if summary else None):
            if not candidate:
                continue
            try:
                return self.registry.by_address(candidate, self.chain_id)
            except UnknownToken:
                logger.warning("Escrow token %s is not registered on chain %s", candidate, self.chain_id)
        defaults = getattr(self.escrows.get(family), "tokens", ())
        if defaults:
            return self.registry.get(defaults[0])
        raise UnknownToken(f"cannot resolve token for {family} escrow", token=token_address)

    async def _summary(self, escrow_hex, family, summary):
        if summary is not None or self.indexer is None:
            return summary
        try:
            return await self.indexer.escrow_summary(escrow_hex, family)
        except NetworkUnavailable as e:
            logger.warning("Indexer unavailable for %s: %s", escrow_hex, e)
            return None

    def _summary_loader(self, escrow_hex, family, summary):
        """Fetch the indexer summary at most once per reconcile."""
        state = {"summary": summary, "loaded": summary is not None}

        async def load():
            if not state["loaded"]:
                state["summary"] = await self._summary(escrow_hex, family, None)
                state["loaded"] = True
            return state["summary"]
        return load

    async def _read_room(self, escrow_id, family):
        """Find the escrow's family and read its room details from the chain."""
        not_found, network_error = None, None
        for name, contract in self._families(family):
            try:
                return name, await contract.get_escrow_details(escrow_id)
            except EscrowNotFound as e:
                not_found = e
            except Exception as e:
                logger.warning("getEscrowDetails failed on %s escrow: %s", name, e)
                network_error = NetworkUnavailable(f"getEscrowDetails failed on {name}: {e}")
        # a family we could not read might still hold the escrow
        raise network_error or not_found or EscrowNotFound()

    # ─────────────────────────────────────────────
    # Reconcile one escrow
    # ─────────────────────────────────────────────
    async def reconcile(self, escrow_id, family=None, summary=None) -> ReconciledEscrow:
        escrow_id = normalize_escrow_id(escrow_id)
        escrow_hex = escrow_id_hex(escrow_id)

        try:
            family, details = await self._read_room(escrow_id, family)
        except EscrowNotFound:
            raise
        except NetworkUnavailable as chain_error:
            summary = await self._summary(escrow_hex, family, summary)
            if summary is None:
                raise NetworkUnavailable(
                    f"escrow {escrow_hex} unavailable from both chain and indexer: {chain_error.message}"
                ) from chain_error
            return self._from_summary(escrow_hex, summary, family)

        contract = self.escrows[family]
        load_summary = self._summary_loader(escrow_hex, family, summary)
        token = self._token(details.token_address, family, summary)
        room = EscrowRoom(
            escrow_id=escrow_hex,
            sender=details.sender,
            token=token,
            total_allocated=BaseUnits(details.total_allocated),
            total_deposited=BaseUnits(details.total_deposited),
            total_withdrawn=BaseUnits(details.total_withdrawn),
            available_balance=BaseUnits(details.available_balance),
            is_active=True,
            created_at=details.created_at,
            last_top_up_at=details.last_top_up_at,
            active_receiver_count=details.active_receiver_count,
            receiver_count=details.receiver_count,
            sender_name=(summary.sender_name if summary else None) or short_address(details.sender),
        )

        try:
            addresses = await contract.get_escrow_receivers(escrow_id)
        except Exception as e:
            logger.warning("getEscrowReceivers failed for %s: %s", escrow_hex, e)
            addresses = list(details.receiver_addresses)
            if not addresses:
                summary = await load_summary()
                addresses = summary.receivers if summary else []

        detail_results = await asyncio.gather(
            *(contract.get_receiver_details(escrow_id, a) for a in addresses),
            return_exceptions=True,
        )

        receivers = []
        for address, result in zip(addresses, detail_results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning("getReceiverDetails failed for %s on %s: %s", address, escrow_hex, result)
                summary = await load_summary()
                receivers.append(self._receiver_from_summary(escrow_hex, address, summary))
                continue
            receivers.append(ReceiverAllocation(
                escrow_id=escrow_hex,
                receiver=address,
                current_allocation=BaseUnits(result.current_allocation),
                withdrawn=BaseUnits(result.withdrawn),
                is_active=bool(result.is_active),
            ))

        vesting, vesting_unavailable = None, False
        try:
            vesting = await contract.get_vesting_info(escrow_id)
        except Exception as e:
            logger.warning("getVestingInfo failed for %s: %s", escrow_hex, e)
            vesting_unavailable = True

        record = ReconciledEscrow(
            room=room,
            receivers=receivers,
            family=family,
            vesting=vesting,
            vesting_unavailable=vesting_unavailable,
        )
        if self.cache is not None:
            self.cache.put(record)
        return record

    def _receiver_from_summary(self, escrow_hex, address, summary):
        key = address.lower()
        if summary is not None and key in summary.allocations:
            return ReceiverAllocation(
                escrow_id=escrow_hex,
                receiver=address,
                current_allocation=BaseUnits(summary.allocations[key]),
                withdrawn=BaseUnits(summary.withdrawn.get(key, 0)),
                is_active=True,
                detail_unavailable=True,
                source="indexer",
            )
        return ReceiverAllocation(
            escrow_id=escrow_hex,
            receiver=address,
            current_allocation=BaseUnits(0),
            withdrawn=BaseUnits(0),
            is_active=False,
            detail_unavailable=True,
            source="none",
        )

    def _from_summary(self, escrow_hex, summary, family):
        family = family or summary.family or next(iter(self.escrows))
        token = self._token(summary.token_address, family)
        room = EscrowRoom(
            escrow_id=escrow_hex,
            sender=summary.sender,
            token=token,
            total_allocated=BaseUnits(summary.total_amount),
            total_deposited=BaseUnits(summary.total_amount),
            total_withdrawn=BaseUnits(min(summary.total_withdrawn, summary.total_amount)),
            available_balance=BaseUnits(max(summary.total_amount - summary.total_withdrawn, 0)),
            is_active=True,
            created_at=summary.created_at,
            last_top_up_at=summary.created_at,
            active_receiver_count=len(summary.allocations),
            receiver_count=len(summary.allocations),
            sender_name=summary.sender_name or short_address(summary.sender),
            source="indexer",
        )
        receivers = [
            ReceiverAllocation(
                escrow_id=escrow_hex,
                receiver=address,
                current_allocation=BaseUnits(amount),
                withdrawn=BaseUnits(summary.withdrawn.get(address, 0)),
                is_active=True,
                detail_unavailable=True,
                source="indexer",
            )
            for address, amount in summary.allocations.items()
        ]
        logger.info("Escrow %s reconciled from indexer only", escrow_hex)
        return ReconciledEscrow(room=room, receivers=receivers, family=family, vesting_unavailable=True)

    # ─────────────────────────────────────────────
    # Reconcile everything an address touches
    # ─────────────────────────────────────────────
    async def _escrow_ids_from_chain(self, address):
        found = {}
        for name, contract in self.escrows.items():
            for lookup in (contract.get_user_escrows, contract.get_receiver_escrows):
                try:
                    for escrow_id in await lookup(address):
                        found.setdefault(escrow_id_hex(escrow_id), (name, None))
                except Exception as e:
                    logger.warning("%s lookup failed on %s escrow: %s", lookup.__name__, name, e)
        return found

    async def _escrow_ids(self, address, batch):
        if self.indexer is not None:
            try:
                indexed = await self.indexer.sender_escrows(address)
                indexed += await self.indexer.receiver_escrows(address)
                found = {}
                for summary in indexed:
                    try:
                        found.setdefault(escrow_id_hex(summary.escrow_id), (summary.family, summary))
                    except EscrowEngineError as e:
                        batch.failures[str(summary.escrow_id)] = e
                return found
            except NetworkUnavailable as e:
                logger.warning("Indexer unavailable, listing escrows from chain: %s", e)
                batch.indexer_available = False
        return await self._escrow_ids_from_chain(address)

    async def reconcile_escrows(self, addresses, max_age=None) -> ReconcileBatch:
        """
        Reconcile every escrow the given addresses send to or receive from.

        Reads for different escrows run concurrently. With ``max_age`` set,
        cached records younger than that are returned without re-reading.
        """
        batch = ReconcileBatch()
        targets = {}
        for address in addresses:
            targets.update(await self._escrow_ids(address, batch))

        async def one(escrow_hex, family, summary):
            if max_age is not None and self.cache is not None:
                cached = self.cache.get(escrow_hex, max_age)
                if cached is not None:
                    return cached
            return await self.reconcile(escrow_hex, family=family, summary=summary)

        items = list(targets.items())
        results = await asyncio.gather(
            *(one(escrow_hex, family, summary) for escrow_hex, (family, summary) in items),
            return_exceptions=True,
        )
        for (escrow_hex, _), result in zip(items, results):
            if isinstance(result, EscrowEngineError):
                logger.warning("Could not reconcile %s: %s", escrow_hex, result)
                batch.failures[escrow_hex] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                batch.records.append(result)
        batch.records.sort(key=lambda r: r.room.created_at, reverse=True)
        return batch
