"""
NFT ownership + metadata sync pipeline

Walks token ids [0, totalSupply) in fixed-size batches. Tokens inside a batch
run in parallel on a thread pool; the next batch starts only after every
token of the current one has a result, which caps in-flight RPC calls at the
batch size. Each token yields a TokenResult, so a token that fails on every
endpoint is reported without touching its siblings.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple
import logging

import requests

from config import IPFS_GATEWAY, METADATA_TIMEOUT, TOKEN_BATCH_SIZE
from nft_metadata import fetch_display_name
from web3_utils import EndpointPool, RpcError

logger = logging.getLogger(__name__)


@dataclass
class OwnershipRecord:
    token_id: int
    contract_address: str
    owner_address: str
    display_name: Optional[str] = None

    @property
    def key(self) -> Tuple[str, int]:
        return (self.contract_address.lower(), self.token_id)

    def to_row(self) -> Dict[str, Any]:
        return {
            "token_id": str(self.token_id),
            "nft_contract": self.contract_address,
            "owner_address": self.owner_address,
            "name": self.display_name,
        }


@dataclass
class TokenResult:
    token_id: int
    record: Optional[OwnershipRecord] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.record is not None


def iter_token_batches(total_supply: int, batch_size: int = TOKEN_BATCH_SIZE) -> Iterator[List[int]]:
    if batch_size <= 0:
        raise ValueError(f"batch size must be positive, got {batch_size}")
    for start in range(0, max(0, total_supply), batch_size):
        yield list(range(start, min(start + batch_size, total_supply)))


def fetch_owner_and_uri(pool: EndpointPool, token_id: int) -> Tuple[str, str]:
    """ownerOf + tokenURI, rotating endpoints on failure.

    Tries at most once per listed endpoint, then re-raises the last RpcError.
    """
    last_error = None
    for _ in range(max(1, len(pool))):
        client = pool.client()
        try:
            owner = client.owner_of(token_id)
            token_uri = client.token_uri(token_id)
            return owner, token_uri
        except RpcError as exc:
            last_error = exc
            logger.warning("[Owners] NFT #%s RPC error on %s: %s", token_id, client.url, str(exc.cause)[:120])
            pool.rotate(client)
    raise last_error


def process_token(
    pool: EndpointPool,
    token_id: int,
    contract_address: str,
    session: Optional[requests.Session] = None,
    ipfs_gateway: str = IPFS_GATEWAY,
    metadata_timeout: float = METADATA_TIMEOUT,
) -> TokenResult:
    try:
        owner, token_uri = fetch_owner_and_uri(pool, token_id)
    except RpcError as exc:
        logger.warning("[Owners] NFT #%s failed on all endpoints: %s", token_id, str(exc)[:160])
        return TokenResult(token_id, error=str(exc))

    name = fetch_display_name(token_uri, session=session, timeout=metadata_timeout, ipfs_gateway=ipfs_gateway)
    record = OwnershipRecord(
        token_id=token_id,
        contract_address=contract_address,
        owner_address=str(owner).lower(),
        display_name=name,
    )
    logger.debug("[Owners] NFT #%s owner=%s name=%s", token_id, record.owner_address, name)
    return TokenResult(token_id, record=record)


def sync_batch(executor: ThreadPoolExecutor, token_ids: List[int], worker) -> List[TokenResult]:
    """Run worker(token_id) for a whole batch and wait for every outcome."""
    futures = [(token_id, executor.submit(worker, token_id)) for token_id in token_ids]
    results = []
    for token_id, future in futures:
        try:
            results.append(future.result())
        except Exception as exc:
            logger.exception("[Owners] NFT #%s crashed: %s", token_id, exc)
            results.append(TokenResult(token_id, error=repr(exc)))
    return results


def run_ownership_sync(
    pool: EndpointPool,
    contract_address: str,
    total_supply: int,
    batch_size: int = TOKEN_BATCH_SIZE,
    session: Optional[requests.Session] = None,
    ipfs_gateway: str = IPFS_GATEWAY,
    metadata_timeout: float = METADATA_TIMEOUT,
) -> Iterator[List[TokenResult]]:
    """Yield one list of TokenResults per batch, batches in ascending id order."""

    def worker(token_id):
        return process_token(pool, token_id, contract_address, session=session,
                             ipfs_gateway=ipfs_gateway, metadata_timeout=metadata_timeout)

    with ThreadPoolExecutor(max_workers=max(1, batch_size), thread_name_prefix="nft-sync") as executor:
        for token_ids in iter_token_batches(total_supply, batch_size):
            logger.info("[Owners] Batch #%s-#%s", token_ids[0], token_ids[-1])
            yield sync_batch(executor, token_ids, worker)
