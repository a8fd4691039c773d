"""
ApeChain NFT Sync - run orchestrator and CLI

Two run shapes:
  owners  full ownership resync over token ids [0, totalSupply)
  orders  Seaport order-log resync over [FROM_BLOCK, latest]

Exit code is 0 whenever the run completes (per-item failures are counted and
logged), 1 only on a startup-level failure: missing config or no reachable
RPC endpoint.
"""
from collections import Counter
from typing import List, Optional
import argparse
import logging
import sys

import requests
from dotenv import load_dotenv

from abis import ORDER_EVENT_NAMES
from config import (
    LOG_CHUNK_SIZE, TOKEN_BATCH_SIZE, ConfigError, FatalStartup, SyncSettings,
    get_chain_config, load_settings,
)
from log_scanner import ScanReport, scan_events
from nft_sync import run_ownership_sync
from order_events import OrderStatus, latest_by_order, normalize_event
from record_sinks import BackendOrderSink, CsvOwnershipStore, MemorySink, RestOwnershipSink
from web3_utils import EndpointPool, NoEndpointAvailable, RetryPolicy, RpcError, call_with_retry

logger = logging.getLogger("sync_runner")


class _ColorFormatter(logging.Formatter):
    """Simple color formatter for console logs."""
    COLORS = {
        'DEBUG': '\x1b[90m',   # dim gray
        'INFO': '\x1b[37m',    # white
        'WARNING': '\x1b[33m', # yellow
        'ERROR': '\x1b[31m',   # red
        'CRITICAL': '\x1b[41m' # red background
    }
    RESET = '\x1b[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        return f"{color}{super().format(record)}{self.RESET}"


def setup_logging(level=logging.INFO):
    root = logging.getLogger()
    if root.handlers:
        return  # already configured

    fmt = '%(asctime)s %(levelname)-7s [%(name)s] %(message)s'
    handler = logging.StreamHandler()
    handler.setFormatter(_ColorFormatter(fmt, datefmt='%H:%M:%S'))

    root.setLevel(level)
    root.addHandler(handler)

    # Library noise
    logging.getLogger('web3').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


class RunCounters:
    """Per-run outcome counters; never persisted."""

    def __init__(self):
        self.counts = Counter()

    def reset(self):
        self.counts.clear()

    def incr(self, name: str, n: int = 1):
        self.counts[name] += n

    def __getitem__(self, name: str) -> int:
        return self.counts[name]

    def summary(self) -> str:
        return ", ".join(f"{k}={v}" for k, v in sorted(self.counts.items())) or "nothing processed"


def _fetch_with_rotation(pool: EndpointPool, fn, description: str):
    """One attempt per listed endpoint; a full miss is a startup failure."""
    def attempt():
        client = pool.client()
        try:
            return fn(client)
        except RpcError:
            pool.rotate(client)
            raise

    try:
        return call_with_retry(attempt, RetryPolicy(max_attempts=max(1, len(pool)), base_delay=0), description)
    except RpcError as exc:
        pool.log_status()
        raise NoEndpointAvailable(f"{description} failed on every endpoint: {exc}") from exc


def sync_owners(
    settings: SyncSettings,
    pool: Optional[EndpointPool] = None,
    sink=None,
    counters: Optional[RunCounters] = None,
    batch_size: int = TOKEN_BATCH_SIZE,
    session: Optional[requests.Session] = None,
) -> RunCounters:
    """Full ownership resync. Endpoints are bound lazily and rotated on failure."""
    counters = counters or RunCounters()
    counters.reset()
    if pool is None:
        pool = EndpointPool(settings.rpc_urls or [], nft_address=settings.nft_contract)
    sink = sink if sink is not None else MemorySink()

    total_supply = _fetch_with_rotation(pool, lambda c: c.total_supply(), "totalSupply")
    logger.info("[Owners] Total NFTs: %s", total_supply)

    for results in run_ownership_sync(
        pool, settings.nft_contract, total_supply, batch_size=batch_size,
        session=session, ipfs_gateway=settings.ipfs_gateway,
    ):
        records = [r.record for r in results if r.ok]
        counters.incr("failed", len(results) - len(records))
        for record, saved in zip(records, sink.upsert_batch(records)):
            if saved:
                counters.incr("saved")
                counters.incr("named" if record.display_name else "unnamed")
                logger.info("[Owners] NFT #%s saved. Owner: %s, Name: %s",
                            record.token_id, record.owner_address, record.display_name)
            else:
                counters.incr("sink_failed")

    pool.log_status()
    logger.info("[Owners] Sync finished: %s", counters.summary())
    return counters


def sync_orders(
    settings: SyncSettings,
    pool: Optional[EndpointPool] = None,
    sink=None,
    counters: Optional[RunCounters] = None,
    to_block: Optional[int] = None,
    chunk: int = LOG_CHUNK_SIZE,
    policy: Optional[RetryPolicy] = None,
) -> RunCounters:
    """Seaport order-log resync.

    The endpoint is probed up front. Each event type is scanned in its own
    pass; the collected events are then delivered in chain order
    (block, logIndex) so an order's last write is its latest status.
    """
    counters = counters or RunCounters()
    counters.reset()
    if pool is None:
        pool = EndpointPool(
            settings.rpc_urls or [],
            nft_address=settings.nft_contract,
            seaport_address=settings.seaport_contract,
            expected_chain_id=get_chain_config().get("chain_id"),
        )
    sink = sink if sink is not None else MemorySink()

    pool.select_working()
    latest = _fetch_with_rotation(pool, lambda c: c.block_number(), "blockNumber")
    end_block = latest if to_block is None else min(to_block, latest)
    logger.info("[Orders] Block range: %s -> %s", settings.from_block, end_block)
    if settings.from_block > end_block:
        logger.info("[Orders] Nothing to scan")
        return counters

    events = []
    for event_name in ORDER_EVENT_NAMES:
        report = ScanReport(event_name)
        for log in scan_events(pool, event_name, settings.from_block, end_block,
                               chunk=chunk, policy=policy, report=report):
            event = normalize_event(log, event_name, settings.nft_contract, settings.seaport_contract)
            if event is None:
                counters.incr("undecodable")
                continue
            events.append(event)
        counters.incr("failed_chunks", len(report.failed_chunks))
        logger.info("[Orders] %s: %d logs in %d chunks (%d failed)",
                    event_name, report.logs, report.chunks, len(report.failed_chunks))

    # Repeated (orderHash, status) keys collapse to their latest event
    latest = {}
    for event in sorted(events, key=lambda e: e.position):
        latest[event.key] = event
    if len(latest) < len(events):
        counters.incr("duplicate", len(events) - len(latest))

    for event in sorted(latest.values(), key=lambda e: e.position):
        if sink.upsert(event):
            counters.incr(event.status.value)
        else:
            counters.incr("sink_failed")

    final = latest_by_order(events)
    counters.incr("open_orders", sum(1 for e in final.values() if e.status is OrderStatus.ACTIVE))

    pool.log_status()
    logger.info("[Orders] Sync finished!")
    logger.info("[Orders] Active: %s", counters["active"])
    logger.info("[Orders] Fulfilled: %s", counters["fulfilled"])
    logger.info("[Orders] Cancelled: %s", counters["cancelled"])
    logger.info("[Orders] Totals: %s", counters.summary())
    return counters


def _owner_sink(args, settings: SyncSettings):
    if args.dry_run:
        return MemorySink()
    if args.csv:
        return CsvOwnershipStore(args.csv)
    if settings.supabase_url and settings.supabase_key:
        return RestOwnershipSink(settings.supabase_url, settings.supabase_key)
    logger.info("[Owners] No SUPABASE_URL configured, writing local CSV snapshot")
    return CsvOwnershipStore()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Sync NFT ownership and Seaport orders from ApeChain')
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    parser.add_argument('--dry-run', action='store_true', help='keep results in memory, write nothing')

    # Same flags after the subcommand; SUPPRESS keeps a flag given before it
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('-v', '--verbose', action='store_true', default=argparse.SUPPRESS, help='debug logging')
    common.add_argument('--dry-run', action='store_true', default=argparse.SUPPRESS,
                        help='keep results in memory, write nothing')

    sub = parser.add_subparsers(dest='mode', required=True)

    owners = sub.add_parser('owners', parents=[common], help='full ownership + metadata resync')
    owners.add_argument('--csv', help='write to a local CSV snapshot instead of Supabase')
    owners.add_argument('--batch-size', type=int, default=TOKEN_BATCH_SIZE)

    orders = sub.add_parser('orders', parents=[common], help='Seaport order-log resync')
    orders.add_argument('--from-block', type=int, help='override FROM_BLOCK')
    orders.add_argument('--to-block', type=int, help='stop at this block instead of latest')
    orders.add_argument('--chunk-size', type=int, default=LOG_CHUNK_SIZE)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        settings = load_settings(args.mode)
        if args.mode == 'owners':
            sync_owners(settings, sink=_owner_sink(args, settings), batch_size=args.batch_size)
        else:
            if args.from_block is not None:
                if args.from_block < 0:
                    raise ConfigError(f"--from-block must be >= 0, got {args.from_block}")
                settings.from_block = args.from_block
            sink = MemorySink() if args.dry_run else BackendOrderSink(settings.backend_url)
            sync_orders(settings, sink=sink, to_block=args.to_block, chunk=args.chunk_size)
    except FatalStartup as e:
        logger.error("Fatal: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
