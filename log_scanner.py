"""
Chunked eth_getLogs scanner

Public RPCs cap the block window of a single log query, so a block range is
walked in fixed-width sub-ranges, strictly ascending. Each sub-range goes
through the retry helper; a sub-range that still fails is reported and
skipped so one bad window does not abort the whole scan.
"""
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional
import logging

from config import LOG_CHUNK_SIZE
from web3_utils import EndpointPool, RetryPolicy, RpcError, call_with_retry

logger = logging.getLogger("log_scanner")


@dataclass(frozen=True)
class ScanRange:
    from_block: int
    to_block: int

    def __post_init__(self):
        if self.from_block < 0:
            raise ValueError(f"fromBlock must be >= 0, got {self.from_block}")
        if self.from_block > self.to_block:
            raise ValueError(f"fromBlock {self.from_block} > toBlock {self.to_block}")

    @property
    def width(self) -> int:
        return self.to_block - self.from_block + 1


@dataclass
class ScanReport:
    event_name: str
    chunks: int = 0
    logs: int = 0
    failed_chunks: List[ScanRange] = field(default_factory=list)


def split_range(from_block: int, to_block: int, chunk: int = LOG_CHUNK_SIZE) -> Iterator[ScanRange]:
    """Consecutive inclusive sub-ranges no wider than `chunk` blocks."""
    if chunk <= 0:
        raise ValueError(f"chunk width must be positive, got {chunk}")
    ScanRange(from_block, to_block)
    start = from_block
    while start <= to_block:
        end = min(start + chunk - 1, to_block)
        yield ScanRange(start, end)
        start = end + 1


def _log_position(log: Any):
    try:
        return (int(log.get("blockNumber") or 0), int(log.get("logIndex") or 0))
    except (AttributeError, TypeError, ValueError):
        return (0, 0)


def scan_events(
    pool: EndpointPool,
    event_name: str,
    from_block: int,
    to_block: int,
    chunk: int = LOG_CHUNK_SIZE,
    policy: Optional[RetryPolicy] = None,
    report: Optional[ScanReport] = None,
    rotate_on_failure: bool = True,
) -> Iterator[Any]:
    """Yield raw decoded logs for one event in ascending block order.

    Lazy and forward-only; a new call re-scans from `from_block`. Pass a
    ScanReport to collect chunk/log counts and the windows that were skipped.
    """
    policy = policy or RetryPolicy()
    if report is None:
        report = ScanReport(event_name)

    for window in split_range(from_block, to_block, chunk):
        report.chunks += 1
        logger.info("[Scanner] %s chunk scan: %s -> %s", event_name, window.from_block, window.to_block)

        def query(window=window):
            client = pool.client()
            try:
                return client.query_events(event_name, window.from_block, window.to_block)
            except RpcError:
                if rotate_on_failure:
                    pool.rotate(client)
                raise

        try:
            logs = call_with_retry(
                query, policy, description=f"{event_name} {window.from_block}-{window.to_block}"
            )
        except RpcError as exc:
            report.failed_chunks.append(window)
            logger.warning("[Scanner] Chunk error %s %s-%s, skipping: %s",
                           event_name, window.from_block, window.to_block, str(exc)[:160])
            continue

        logs = sorted(logs or [], key=_log_position)
        report.logs += len(logs)
        if logs:
            logger.debug("[Scanner] %s %s-%s: %d logs", event_name, window.from_block, window.to_block, len(logs))
        for log in logs:
            yield log
