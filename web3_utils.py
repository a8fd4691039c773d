"""
ApeChain NFT Sync - Web3 Connection Utilities
RPC endpoint pool with round-robin fallback, chain client binding and retry helper
"""
from web3 import Web3
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
from collections import deque
import logging
import threading
import time

from abis import ERC721_ABI, SEAPORT_ABI
from config import FatalStartup, RPC_TIMEOUT, RETRY_ATTEMPTS, RETRY_BASE_DELAY

logger = logging.getLogger(__name__)


class RpcError(Exception):
    """A single RPC call failed on one endpoint (transport or decoding)."""

    def __init__(self, endpoint: str, cause: Exception):
        super().__init__(f"{endpoint}: {cause}")
        self.endpoint = endpoint
        self.cause = cause


class NoEndpointAvailable(FatalStartup):
    """No configured RPC endpoint answered the liveness probe."""


@dataclass(frozen=True)
class EndpointDescriptor:
    url: str
    index: int


@dataclass
class ProviderState:
    """Track health metrics for a single RPC provider."""

    url: str
    error_count: int = 0
    success_count: int = 0
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    response_times: deque = field(default_factory=lambda: deque(maxlen=100))

    def mark_success(self, response_time: float = 0.0):
        self.success_count += 1
        self.last_success = datetime.utcnow()
        self.last_error = None
        self.response_times.append(response_time)

    def mark_failure(self, err: str):
        self.error_count += 1
        self.last_error = err


class ChainClient:
    """Read-only binding of the NFT and Seaport contracts to one endpoint.

    Every call returns a decoded value or raises RpcError. No retries here:
    callers decide whether to retry, rotate or give up.
    """

    def __init__(
        self,
        descriptor: EndpointDescriptor,
        nft_address: Optional[str] = None,
        seaport_address: Optional[str] = None,
        timeout: int = RPC_TIMEOUT,
        tracker: Optional[Callable[[str, bool, float, Optional[str]], None]] = None,
    ):
        self.descriptor = descriptor
        self._tracker = tracker
        self._web3 = Web3(Web3.HTTPProvider(descriptor.url, request_kwargs={"timeout": timeout}))
        self._nft = None
        self._seaport = None
        if nft_address:
            self._nft = self._web3.eth.contract(address=Web3.to_checksum_address(nft_address), abi=ERC721_ABI)
        if seaport_address:
            self._seaport = self._web3.eth.contract(address=Web3.to_checksum_address(seaport_address), abi=SEAPORT_ABI)

    @property
    def url(self) -> str:
        return self.descriptor.url

    def __repr__(self):
        return f"ChainClient({self.descriptor.url!r})"

    def _call(self, fn: Callable[[], Any]) -> Any:
        start_time = time.time()
        try:
            result = fn()
        except Exception as exc:
            if self._tracker:
                self._tracker(self.url, False, time.time() - start_time, str(exc)[:200])
            raise RpcError(self.url, exc) from exc
        if self._tracker:
            self._tracker(self.url, True, time.time() - start_time, None)
        return result

    def _nft_contract(self):
        if self._nft is None:
            raise RpcError(self.url, ValueError("NFT contract address not configured"))
        return self._nft

    def owner_of(self, token_id: int) -> str:
        contract = self._nft_contract()
        return self._call(lambda: contract.functions.ownerOf(token_id).call())

    def token_uri(self, token_id: int) -> str:
        contract = self._nft_contract()
        return self._call(lambda: contract.functions.tokenURI(token_id).call())

    def total_supply(self) -> int:
        contract = self._nft_contract()
        return int(self._call(lambda: contract.functions.totalSupply().call()))

    def block_number(self) -> int:
        return int(self._call(lambda: self._web3.eth.block_number))

    def chain_id(self) -> int:
        return int(self._call(lambda: self._web3.eth.chain_id))

    def query_events(self, event_name: str, from_block: int, to_block: int) -> List[Any]:
        """Decoded logs of one Seaport event over an inclusive block range."""
        if self._seaport is None:
            raise RpcError(self.url, ValueError("Seaport contract address not configured"))
        event = getattr(self._seaport.events, event_name)
        return list(self._call(lambda: event().get_logs(from_block=from_block, to_block=to_block)))


class EndpointPool:
    """Round-robin RPC endpoint pool that owns the active chain client.

    Rotation is monotonic: every call to next() advances the cursor and wraps
    around the fixed list, so no endpoint is ever blacklisted. The active
    client and the cursor are the only shared mutable state and are guarded
    by one lock.
    """

    def __init__(
        self,
        urls: List[str],
        nft_address: Optional[str] = None,
        seaport_address: Optional[str] = None,
        timeout: int = RPC_TIMEOUT,
        expected_chain_id: Optional[int] = None,
        client_factory: Optional[Callable[[EndpointDescriptor], Any]] = None,
    ):
        self.endpoints: List[EndpointDescriptor] = [EndpointDescriptor(url, idx) for idx, url in enumerate(urls)]
        self.providers: Dict[str, ProviderState] = {url: ProviderState(url) for url in urls}
        self.expected_chain_id = expected_chain_id
        self._nft_address = nft_address
        self._seaport_address = seaport_address
        self._timeout = timeout
        self._client_factory = client_factory or self._make_client
        self._cursor = 0
        self._active = None
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()

    def __len__(self):
        return len(self.endpoints)

    def _make_client(self, descriptor: EndpointDescriptor) -> ChainClient:
        return ChainClient(
            descriptor,
            nft_address=self._nft_address,
            seaport_address=self._seaport_address,
            timeout=self._timeout,
            tracker=self.track,
        )

    def track(self, url: str, ok: bool, response_time: float, error: Optional[str] = None):
        provider = self.providers.get(url)
        if provider is None:
            return
        with self._stats_lock:
            if ok:
                provider.mark_success(response_time)
            else:
                provider.mark_failure(error or "unknown error")

    def _next_locked(self) -> EndpointDescriptor:
        if not self.endpoints:
            raise NoEndpointAvailable("No RPC endpoints configured")
        descriptor = self.endpoints[self._cursor % len(self.endpoints)]
        self._cursor += 1
        return descriptor

    def next(self) -> EndpointDescriptor:
        with self._lock:
            return self._next_locked()

    def _probe(self, descriptor: EndpointDescriptor):
        client = self._client_factory(descriptor)
        try:
            client.block_number()
            if self.expected_chain_id is not None:
                reported = client.chain_id()
                if reported != self.expected_chain_id:
                    self.track(descriptor.url, False, 0.0, f"wrong chain (reported {reported})")
                    logger.warning("[RPC] %s reports chain %s, expected %s -> skipping",
                                   descriptor.url, reported, self.expected_chain_id)
                    return None
        except RpcError as exc:
            logger.warning("[RPC] Endpoint failed: %s (%s)", descriptor.url, str(exc.cause)[:120])
            return None
        return client

    def validate(self, descriptor: EndpointDescriptor) -> bool:
        """Cheap liveness probe: current block height (and chain id if pinned)."""
        return self._probe(descriptor) is not None

    def select_working(self):
        """Probe endpoints in rotation order and bind the first live one.

        Raises NoEndpointAvailable when a full cycle finds nothing reachable.
        """
        for _ in range(len(self.endpoints)):
            descriptor = self.next()
            client = self._probe(descriptor)
            if client is not None:
                with self._lock:
                    self._active = client
                logger.info("[RPC] Working endpoint: %s", descriptor.url)
                return client
        self.log_status()
        raise NoEndpointAvailable("No RPC available (all %d endpoints failed)" % len(self.endpoints))

    def client(self):
        """Current chain client, bound lazily to the next endpoint on first use."""
        with self._lock:
            if self._active is None:
                self._active = self._client_factory(self._next_locked())
            return self._active

    def rotate(self, failed=None):
        """Swap the active client for the next endpoint.

        Only rotates when `failed` is still the active client, so concurrent
        workers that saw the same endpoint fail advance the cursor once.
        """
        with self._lock:
            if self._active is None or failed is None or self._active is failed:
                previous = self._active
                self._active = self._client_factory(self._next_locked())
                if previous is not None:
                    logger.info("[RPC] Switching endpoint %s -> %s", previous.url, self._active.url)
            return self._active

    def log_status(self):
        status = []
        with self._stats_lock:
            for p in self.providers.values():
                avg = sum(p.response_times) / len(p.response_times) if p.response_times else 0
                status.append(
                    f"{p.url} (ok={p.success_count}, errors={p.error_count}, avg={avg:.2f}s, "
                    f"last_success={p.last_success}, last_error={p.last_error})"
                )
        logger.info("[RPC] Provider status: %s", "; ".join(status))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = RETRY_ATTEMPTS
    base_delay: float = RETRY_BASE_DELAY

    def delay(self, attempt: int) -> float:
        return self.base_delay * attempt


def call_with_retry(
    fn: Callable[[], Any],
    policy: RetryPolicy,
    description: str = "rpc call",
    on_failure: Optional[Callable[[RpcError], None]] = None,
) -> Any:
    """Run fn() up to policy.max_attempts times, sleeping base_delay * attempt
    between attempts. Re-raises the last RpcError once attempts are exhausted.
    """
    last_error: Optional[RpcError] = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except RpcError as exc:
            last_error = exc
            if on_failure:
                on_failure(exc)
            if attempt < policy.max_attempts:
                wait = policy.delay(attempt)
                logger.warning("[RPC] Retry #%d %s in %.1fs: %s", attempt, description, wait, str(exc)[:160])
                if wait > 0:
                    time.sleep(wait)
    raise last_error
