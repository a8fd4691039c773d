"""
ApeChain NFT Sync - Centralized Configuration
Single source of truth for all constants, addresses, and settings
"""
import os
from dataclasses import dataclass
from typing import Dict, List, Optional
from web3 import Web3

# ========== CHAIN CONFIGURATION ==========
CHAINS = {
    'apechain': {
        'name': 'ApeChain',
        'chain_id': 33139,
        # Public RPCs (always available, no API key needed)
        'rpc': [
            "https://rpc.apechain.com/http",
            "https://apechain.drpc.org",
            "https://33139.rpc.thirdweb.com",
        ],
        'explorer': 'https://apescan.io',
    },
}

ACTIVE_CHAIN = 'apechain'


def get_chain_config(chain_name=None):
    """Get configuration for specified chain or active chain"""
    chain = chain_name or ACTIVE_CHAIN
    return CHAINS.get(chain, CHAINS['apechain'])


def build_rpc_list(primary: Optional[str] = None, chain_name: Optional[str] = None) -> List[str]:
    """Primary RPC first (if configured), then the chain's public fallbacks.

    Empty entries and duplicates are dropped so a primary that equals one of
    the public endpoints is only tried once per rotation cycle.
    """
    rpcs = []
    for url in [primary] + list(get_chain_config(chain_name).get("rpc", [])):
        url = (url or '').strip()
        if url and url not in rpcs:
            rpcs.append(url)
    return rpcs


# ========== SCAN / SYNC TUNING ==========
# eth_getLogs block window; most public ApeChain RPCs reject wider ranges
LOG_CHUNK_SIZE = 5000
RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY = 2.0  # seconds, multiplied by attempt number
# Parallel RPC calls per token batch
TOKEN_BATCH_SIZE = 20

# ========== TIMEOUTS (seconds) ==========
RPC_TIMEOUT = 15
METADATA_TIMEOUT = 10
BACKEND_TIMEOUT = 15

# ========== METADATA ==========
IPFS_GATEWAY = os.environ.get('IPFS_GATEWAY', 'https://ipfs.io/ipfs/')
ARWEAVE_GATEWAY = 'https://arweave.net/'

# ========== TOKEN DECIMALS ==========
DEFAULT_TOKEN_DECIMALS = 18
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Payment tokens seen in Seaport considerations (lowercase addresses -> decimals)
TOKEN_DECIMALS: Dict[str, int] = {
    ZERO_ADDRESS: 18,                                   # native APE
    "0x48b62137edfa95a428d35c09e44256a739f6b557": 18,  # WAPE
    "0xa2235d059f80e176d931ef76b6c51953eb3fbef4": 18,  # ApeETH
    "0xa4151b2b3e269645181dccf2d426ce75fcbdeca9": 6,   # USDC.e
}

# ========== STORAGE ==========
DATA_DIR = "data"
OWNERSHIP_CSV_PATH = os.path.join(DATA_DIR, "nft_owners.csv")
OWNERSHIP_TABLE = "nfts"


class FatalStartup(Exception):
    """Startup-level failure: the whole run is aborted with a non-zero exit."""


class ConfigError(FatalStartup):
    """Required configuration is missing or malformed."""


# Required env keys per run mode
REQUIRED_KEYS = {
    'owners': ['NFT_CONTRACT_ADDRESS'],
    'orders': ['NFT_CONTRACT_ADDRESS', 'SEAPORT_CONTRACT_ADDRESS', 'BACKEND_URL'],
}


@dataclass
class SyncSettings:
    nft_contract: str
    seaport_contract: str = ''
    backend_url: str = ''
    rpc_urls: Optional[List[str]] = None
    from_block: int = 0
    supabase_url: str = ''
    supabase_key: str = ''
    ipfs_gateway: str = IPFS_GATEWAY


def load_settings(mode: str, env: Optional[Dict[str, str]] = None) -> SyncSettings:
    """Build SyncSettings for a run mode from the environment.

    Raises ConfigError naming every missing key for the mode.
    """
    env = os.environ if env is None else env
    missing = [key for key in REQUIRED_KEYS.get(mode, []) if not (env.get(key) or '').strip()]
    if missing:
        raise ConfigError(f"Missing env variables for '{mode}': {', '.join(missing)}")

    for key in ("NFT_CONTRACT_ADDRESS", "SEAPORT_CONTRACT_ADDRESS"):
        value = (env.get(key) or "").strip()
        if value and not Web3.is_address(value):
            raise ConfigError(f"{key} is not a valid address: {value!r}")

    raw_from = (env.get('FROM_BLOCK') or '').strip()
    try:
        from_block = int(raw_from) if raw_from else 0
    except ValueError:
        raise ConfigError(f"FROM_BLOCK must be an integer, got {raw_from!r}")
    if from_block < 0:
        raise ConfigError(f"FROM_BLOCK must be >= 0, got {from_block}")

    return SyncSettings(
        nft_contract=env.get('NFT_CONTRACT_ADDRESS', '').strip(),
        seaport_contract=env.get('SEAPORT_CONTRACT_ADDRESS', '').strip(),
        backend_url=env.get('BACKEND_URL', '').strip().rstrip('/'),
        rpc_urls=build_rpc_list(env.get('APECHAIN_RPC')),
        from_block=from_block,
        supabase_url=env.get('SUPABASE_URL', '').strip().rstrip('/'),
        supabase_key=env.get('SUPABASE_SERVICE_ROLE_KEY', '').strip(),
        ipfs_gateway=env.get('IPFS_GATEWAY') or IPFS_GATEWAY,
    )
