"""
Indexer client - cached escrow summaries from the subgraph and the backend API.

Indexer data is eventually consistent and never authoritative; the reconciler
only uses it when a chain read fails, or for fields the chain does not expose.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from escrow_claims.config import INDEXER_URL, INDEXER_IDRX_URL, BACKEND_URL, INDEXER_TIMEOUT
from escrow_claims.errors import NetworkUnavailable
from escrow_claims.models import short_address

logger = logging.getLogger(__name__)

ESCROW_FIELDS = """
          escrowId
          sender
          receivers
          amounts
          totalAmount
          tokenAddress
          block_number
          timestamp_
          transactionHash_
          contractId_
"""

SENDER_ESCROWS_QUERY = """
      query GetUserEscrows($userAddress: String!) {
        escrowCreateds(
          where: { sender: $userAddress }
          orderBy: timestamp_
          orderDirection: desc
          first: 100
        ) {%s}
      }
""" % ESCROW_FIELDS

RECEIVER_ESCROWS_QUERY = """
      query GetReceiverEscrows($receiverAddress: String!) {
        escrowCreateds(
          where: { receivers_contains: $receiverAddress }
          orderBy: timestamp_
          orderDirection: desc
          first: 100
        ) {%s}
      }
""" % ESCROW_FIELDS

ESCROW_DETAILS_QUERY = """
      query GetEscrowDetails($escrowId: String!) {
        escrowCreateds(where: { escrowId: $escrowId }) {%s}
        withdrawFundss(where: { escrowId: $escrowId }) {
          recipient
          amount
          timestamp_
          transactionHash_
          block_number
        }
      }
""" % ESCROW_FIELDS

EVENT_TYPES = (
    "ESCROW_CREATED",
    "TOPUP_FUNDS",
    "ADD_RECIPIENTS",
    "REMOVE_RECIPIENTS",
    "UPDATE_RECIPIENTS_AMOUNT",
    "WITHDRAW_FUNDS",
    "ESCROW_COMPLETED",
)


def _split(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value]
    return [v.strip() for v in str(value).split(",") if v.strip()]


def _int(value, default=0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class IndexedEscrow:
    """One escrow as the indexer last saw it (all amounts in base units)."""
    escrow_id: str
    sender: str
    token_address: Optional[str] = None
    total_amount: int = 0
    allocations: Dict[str, int] = field(default_factory=dict)
    withdrawn: Dict[str, int] = field(default_factory=dict)
    created_at: int = 0
    transaction_hash: Optional[str] = None
    family: Optional[str] = None
    sender_name: Optional[str] = None

    @property
    def receivers(self) -> List[str]:
        return list(self.allocations)

    @property
    def total_withdrawn(self) -> int:
        return sum(self.withdrawn.values())

    @classmethod
    def from_graphql(cls, entry, withdraws=(), family=None):
        receivers = _split(entry.get("receivers"))
        amounts = _split(entry.get("amounts"))
        allocations = {}
        for index, address in enumerate(receivers):
            allocations[address.lower()] = _int(amounts[index] if index < len(amounts) else 0)

        withdrawn = {}
        for w in withdraws:
            recipient = (w.get("recipient") or "").lower()
            withdrawn[recipient] = withdrawn.get(recipient, 0) + _int(w.get("amount"))

        return cls(
            escrow_id=entry.get("escrowId", ""),
            sender=entry.get("sender", ""),
            token_address=entry.get("tokenAddress"),
            total_amount=_int(entry.get("totalAmount")),
            allocations=allocations,
            withdrawn=withdrawn,
            created_at=_int(entry.get("timestamp_")),
            transaction_hash=entry.get("transactionHash_"),
            family=family,
            sender_name=short_address(entry.get("sender")),
        )


class IndexerClient:
    """
    Async client for the escrow subgraphs and the backend event API.

    Usage:
        async with IndexerClient() as indexer:
            escrows = await indexer.sender_escrows("0x...")
    """

    def __init__(self, base_url: str = INDEXER_URL, idrx_url: Optional[str] = INDEXER_IDRX_URL,
                 backend_url: Optional[str] = BACKEND_URL, timeout: float = INDEXER_TIMEOUT,
                 client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            base_url: GraphQL endpoint of the USDC escrow subgraph
            idrx_url: GraphQL endpoint of the IDRX escrow subgraph
            backend_url: Base URL of the backend REST API (events)
            timeout: Request timeout in seconds
        """
        self.endpoints = {"USDC": base_url}
        if idrx_url:
            self.endpoints["IDRX"] = idrx_url
        self.backend_url = backend_url.rstrip("/") if backend_url else None
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def _post(self, url: str, data: dict) -> dict:
        """Make a POST request and return the JSON body."""
        try:
            response = await self._client.post(url, json=data, headers={"Content-Type": "application/json"})
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkUnavailable(f"indexer request to {url} failed: {e}") from e

    async def _query(self, family: str, query: str, variables: dict) -> dict:
        url = self.endpoints.get(family)
        if url is None:
            raise NetworkUnavailable(f"no indexer configured for {family} escrows")
        body = await self._post(url, {"query": query, "variables": variables})
        if body.get("errors"):
            raise NetworkUnavailable(f"indexer returned errors: {body['errors']}")
        return body.get("data") or {}

    async def _escrows_for(self, query, variable, address) -> List[IndexedEscrow]:
        escrows = []
        for family in self.endpoints:
            data = await self._query(family, query, {variable: address.lower()})
            for entry in data.get("escrowCreateds") or []:
                escrows.append(IndexedEscrow.from_graphql(entry, family=family))
        logger.debug("Indexer returned %d escrows for %s", len(escrows), address)
        return escrows

    async def sender_escrows(self, address: str) -> List[IndexedEscrow]:
        """Escrows created by ``address`` across all escrow families."""
        return await self._escrows_for(SENDER_ESCROWS_QUERY, "userAddress", address)

    async def receiver_escrows(self, address: str) -> List[IndexedEscrow]:
        """Escrows in which ``address`` is a receiver."""
        return await self._escrows_for(RECEIVER_ESCROWS_QUERY, "receiverAddress", address)

    async def escrow_summary(self, escrow_id: str, family: Optional[str] = None) -> Optional[IndexedEscrow]:
        """Creation data plus summed withdrawals for one escrow, or None if unindexed."""
        families = [family] if family else list(self.endpoints)
        for fam in families:
            data = await self._query(fam, ESCROW_DETAILS_QUERY, {"escrowId": escrow_id})
            created = data.get("escrowCreateds") or []
            if created:
                return IndexedEscrow.from_graphql(created[0], data.get("withdrawFundss") or [], family=fam)
        return None

    async def save_event(self, event_type: str, escrow_id: str, tx_hash: str, initiator: str,
                         token: str, event_data: Optional[dict] = None, group_id: str = "") -> Optional[dict]:
        """Record an escrow event with the backend; a no-op when no backend is configured."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown escrow event type {event_type}")
        if not self.backend_url:
            return None
        payload = {
            "eventType": event_type,
            "escrowId": escrow_id,
            "groupId": group_id,
            "transactionHash": tx_hash,
            "initiatorWalletAddress": initiator,
            "tokenType": token,
            "eventData": event_data or {},
        }
        return await self._post(f"{self.backend_url}/escrow-events/save-event", payload)
