"""
ClaimEngine - one object wiring the registry, chain adapters, indexer, cache
and ledger together, and exposing the operations surfaces call.
"""
import logging
from typing import Iterable, Optional

from escrow_claims import config
from escrow_claims.allowance import AllowanceOrchestrator, WriteLocks
from escrow_claims.cache import ReconciledCache
from escrow_claims.contracts import EscrowContract, LocalWallet, TokenContract, connect
from escrow_claims.eligibility import EligibilityEvaluator
from escrow_claims.errors import WalletNotConnected
from escrow_claims.indexer import IndexerClient
from escrow_claims.models import ClaimRequest
from escrow_claims.operations import SenderOperations
from escrow_claims.reconcile import EscrowReconciler
from escrow_claims.settlement import ClaimSettlementCoordinator
from escrow_claims.tokens import TokenRegistry, default_registry

logger = logging.getLogger(__name__)


class ClaimEngine:

    def __init__(self, registry: TokenRegistry, escrows, token_contracts, wallet=None, indexer=None,
                 cache=None, ledger=None, chain_id=config.CHAIN_ID, evaluator=None,
                 confirmation_timeout=config.CONFIRMATION_TIMEOUT):
        self.registry = registry
        self.chain_id = chain_id
        self.escrows = escrows
        self.wallet = wallet
        self.indexer = indexer
        self.cache = cache
        self.ledger = ledger
        self.evaluator = evaluator or EligibilityEvaluator()

        self.reconciler = EscrowReconciler(escrows, registry, indexer=indexer, cache=cache, chain_id=chain_id)
        self.orchestrator = AllowanceOrchestrator(token_contracts, confirmation_timeout=confirmation_timeout)
        self.locks = WriteLocks()
        self.coordinator = ClaimSettlementCoordinator(
            self.reconciler, self.orchestrator, evaluator=self.evaluator,
            wallet=wallet, indexer=indexer, ledger=ledger, locks=self.locks,
        )
        self.operations = SenderOperations(self.reconciler, self.orchestrator, wallet=wallet, indexer=indexer,
                                           locks=self.locks)

    @classmethod
    def from_env(cls, chain_id=None, rpc_url=None, private_key=None, use_cache=True, database_url=None):
        """Build an engine from ``config`` (environment variables and deployments.json)."""
        chain_id = config.CHAIN_ID if chain_id is None else int(chain_id)
        chain = config.chain_config(chain_id)
        rpc_url = rpc_url or (config.RPC_URL if chain_id == config.CHAIN_ID else None) or chain["rpc_url"]
        w3 = connect(rpc_url)

        registry = default_registry()
        escrows = {
            family: EscrowContract.from_config(w3, family, settings)
            for family, settings in config.escrow_families(chain_id).items()
        }

        token_contracts = {}
        for token in registry.for_chain(chain_id):
            if token.native:
                continue
            token_contracts[token.symbol] = TokenContract(w3, token.address_on(chain_id), token.symbol)

        wallet = None
        try:
            wallet = LocalWallet.from_key(w3, private_key or config.PRIVATE_KEY,
                                          confirmation_timeout=config.CONFIRMATION_TIMEOUT)
        except WalletNotConnected:
            logger.info("No wallet configured; write operations are disabled")

        indexer = IndexerClient(
            base_url=config.INDEXER_URL,
            idrx_url=config.INDEXER_IDRX_URL,
            backend_url=config.BACKEND_URL,
            timeout=config.INDEXER_TIMEOUT,
        )
        cache = ReconciledCache(config.CACHE_DIR) if use_cache else None

        ledger = None
        database_url = database_url or config.DATABASE_URL
        if database_url:
            from escrow_claims.db import ClaimLedger
            ledger = ClaimLedger.from_url(database_url)

        logger.info("Claim engine on chain %s via %s (%d escrow families)", chain_id, rpc_url, len(escrows))
        return cls(registry, escrows, token_contracts, wallet=wallet, indexer=indexer,
                   cache=cache, ledger=ledger, chain_id=chain_id)

    async def close(self):
        if self.indexer is not None:
            await self.indexer.close()
        if self.cache is not None:
            self.cache.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ─────────────────────────────────────────────
    # Produced interface
    # ─────────────────────────────────────────────
    async def evaluate_claim(self, request: ClaimRequest):
        return await self.coordinator.evaluate_claim(request)

    async def execute_claim(self, request: ClaimRequest, on_transition=None):
        return await self.coordinator.execute_claim(request, on_transition=on_transition)

    async def reconcile(self, escrow_id, family=None):
        return await self.reconciler.reconcile(escrow_id, family=family)

    async def reconcile_escrows(self, addresses: Iterable[str], max_age: Optional[float] = None):
        return await self.reconciler.reconcile_escrows(list(addresses), max_age=max_age)

    async def top_up(self, escrow_id, amount, family=None):
        return await self.operations.top_up(escrow_id, amount, family=family)

    async def add_receiver(self, escrow_id, receiver, amount, family=None):
        return await self.operations.add_receiver(escrow_id, receiver, amount, family=family)

    def history(self, receiver=None, escrow_id=None, limit=50):
        if self.ledger is None:
            return []
        return self.ledger.history(receiver=receiver, escrow_id=escrow_id, limit=limit)
