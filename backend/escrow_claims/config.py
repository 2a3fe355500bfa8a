import os
import json
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Escrow identifiers are bytes32 on every escrow contract family
ESCROW_ID_BYTES = 32

# Protocol claim bounds, in human units of the claimed token
MIN_CLAIM_AMOUNT = Decimal("2")
MAX_CLAIM_AMOUNT = Decimal("5000")

# Transaction building
GAS_MULTIPLIER = 1.2
PRIORITY_FEE_GWEI = 2
FALLBACK_BASE_FEE_GWEI = 15
FALLBACK_GAS = 200_000

# Load deployment data (chains, escrow families, tokens)
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DEPLOYMENTS_PATH = os.getenv(
    "ESCROW_DEPLOYMENTS_PATH",
    os.path.join(BASE_DIR, "data", "deployments.json"),
)

with open(DEPLOYMENTS_PATH, "r") as f:
    deployments = json.load(f)

SUPPORTED_CHAINS = sorted(int(chain_id) for chain_id in deployments["chains"])

CHAIN_ID = int(os.getenv("ESCROW_CHAIN_ID", deployments.get("default_chain_id", 84532)))
RPC_URL = os.getenv("ESCROW_RPC_URL", deployments["chains"].get(str(CHAIN_ID), {}).get("rpc_url"))

INDEXER_URL = os.getenv(
    "ESCROW_INDEXER_URL",
    "https://api.goldsky.com/api/public/project_cmf7w213gukw101tb0u5m7760/subgraphs/movo-basesepolia-escrow/1.0.0/gn",
)
INDEXER_IDRX_URL = os.getenv(
    "ESCROW_INDEXER_IDRX_URL",
    "https://api.goldsky.com/api/public/project_cmf7w213gukw101tb0u5m7760/subgraphs/movo-basesepolia-escrowIdrx/1.0.0/gn",
)
BACKEND_URL = os.getenv("ESCROW_BACKEND_URL")
INDEXER_TIMEOUT = float(os.getenv("ESCROW_INDEXER_TIMEOUT", "15"))

PRIVATE_KEY = os.getenv("EVM_PRIVATE_KEY")
CONFIRMATION_TIMEOUT = float(os.getenv("ESCROW_CONFIRMATION_TIMEOUT", "120"))

CACHE_DIR = os.getenv("ESCROW_CACHE_DIR", "cache")
DATABASE_URL = os.getenv("DATABASE_URL")


def chain_config(chain_id=None):
    """Return the deployment block for a chain, or raise KeyError."""
    chain_id = CHAIN_ID if chain_id is None else chain_id
    return deployments["chains"][str(chain_id)]


def escrow_families(chain_id=None):
    """Map family name -> escrow contract settings for a chain."""
    return chain_config(chain_id)["escrows"]


def explorer_url(tx_hash, chain_id=None):
    try:
        base = chain_config(chain_id).get("explorer_url", "")
    except KeyError:
        return tx_hash
    return f"{base}{tx_hash}"
