"""
Projection sinks: idempotent upsert of ownership records and order events

Every sink reports success per record as a boolean and never raises, so one
rejected write is counted and the run moves on. Deduplication across runs is
left to the store's overwrite-by-key semantics.
"""
from typing import Any, Dict, Iterable, List, Optional
import logging

import portalocker
import requests

from config import BACKEND_TIMEOUT, OWNERSHIP_CSV_PATH, OWNERSHIP_TABLE
from csv_utils import upsert_rows_by_key

logger = logging.getLogger(__name__)


class MemorySink:
    """Dict-backed sink keyed by record.key (dry runs, tests)."""

    def __init__(self):
        self.records: Dict[Any, Any] = {}
        self.writes = 0

    def upsert(self, record) -> bool:
        self.records[record.key] = record
        self.writes += 1
        return True

    def upsert_batch(self, records: Iterable) -> List[bool]:
        return [self.upsert(r) for r in records]


class CsvOwnershipStore:
    """Local ownership snapshot, one row per (nft_contract, token_id)."""

    FIELDNAMES = ['token_id', 'nft_contract', 'owner_address', 'name']
    KEY_FIELDS = ('nft_contract', 'token_id')

    def __init__(self, path: str = OWNERSHIP_CSV_PATH):
        self.path = path

    def upsert(self, record) -> bool:
        return self.upsert_batch([record])[0]

    def upsert_batch(self, records: Iterable) -> List[bool]:
        records = list(records)
        if not records:
            return []
        try:
            changed = upsert_rows_by_key(self.path, [r.to_row() for r in records], self.FIELDNAMES, self.KEY_FIELDS)
        except (OSError, portalocker.LockException) as e:
            logger.warning("[Store] CSV write failed (%s): %s", self.path, e)
            return [False] * len(records)
        logger.debug("[Store] %d rows upserted, %d changed", len(records), sum(changed))
        return [True] * len(records)


class RestOwnershipSink:
    """PostgREST (Supabase) upsert: POST with merge-duplicates on the key columns."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = OWNERSHIP_TABLE,
        on_conflict: str = "nft_contract,token_id",
        session: Optional[requests.Session] = None,
        timeout: float = BACKEND_TIMEOUT,
    ):
        self.url = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self.on_conflict = on_conflict
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Prefer": "resolution=merge-duplicates,return=minimal",
        }

    def _post(self, body) -> bool:
        try:
            resp = self.session.post(
                self.url,
                params={"on_conflict": self.on_conflict},
                json=body,
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.warning("[Store] Upsert error: %s", str(e)[:200])
            return False
        if not 200 <= resp.status_code < 300:
            logger.warning("[Store] Upsert rejected: %s %s", resp.status_code, resp.text[:200])
            return False
        return True

    def upsert(self, record) -> bool:
        return self._post(record.to_row())

    def upsert_batch(self, records: Iterable) -> List[bool]:
        records = list(records)
        if not records:
            return []
        return [self._post([r.to_row() for r in records])] * len(records)


class BackendOrderSink:
    """POSTs one order payload per event to {BACKEND_URL}/api/order."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = BACKEND_TIMEOUT):
        self.url = f"{base_url.rstrip('/')}/api/order"
        self.timeout = timeout
        self.session = session or requests.Session()

    def upsert(self, event) -> bool:
        payload = event.to_payload()
        try:
            resp = self.session.post(
                self.url,
                json=payload,
                headers={"Content-Type": "application/json", "Idempotency-Key": payload["eventKey"]},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.warning("[Orders] Backend error: %s", str(e)[:200])
            return False
        if not 200 <= resp.status_code < 300:
            logger.warning("[Orders] Backend rejected %s: %s %s", payload["eventKey"][:24], resp.status_code, resp.text[:200])
            return False
        return True

    def upsert_batch(self, events: Iterable) -> List[bool]:
        return [self.upsert(e) for e in events]
