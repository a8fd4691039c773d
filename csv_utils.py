"""csv_utils
File-locked CSV helpers for the local ownership snapshot.

Rows are keyed by one or more columns; writing a row whose key already
exists replaces it in place, so re-running a sync converges on the same file.
"""

import csv
import os
import tempfile
from typing import Dict, List, Sequence
import portalocker


def read_rows(csv_path: str) -> List[Dict[str, str]]:
    # Writers replace the file atomically, readers never see a partial file
    if not os.path.exists(csv_path):
        return []
    with open(csv_path, 'r', encoding='utf-8', newline='') as f:
        return list(csv.DictReader(f))


def _row_key(row: dict, key_fields: Sequence[str]) -> tuple:
    return tuple(str(row.get(k) or '').lower() for k in key_fields)


def _write_atomic(csv_path: str, rows: List[dict], fieldnames: List[str]):
    dirn = os.path.dirname(csv_path) or '.'
    fd, tmp_path = tempfile.mkstemp(prefix='csv_tmp_', suffix='.csv', dir=dirn)
    os.close(fd)
    try:
        with open(tmp_path, 'w', encoding='utf-8', newline='') as tf:
            writer = csv.DictWriter(tf, fieldnames=fieldnames, extrasaction='ignore')
            writer.writeheader()
            writer.writerows(rows)
        os.replace(tmp_path, csv_path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def upsert_rows_by_key(csv_path: str, new_rows: List[dict], fieldnames: List[str],
                       key_fields: Sequence[str]) -> List[bool]:
    """Insert each row or overwrite the stored row with the same key.

    One locked read-modify-replace per call. Returns, per input row, whether
    it changed the file (False when an identical row was already stored).
    """
    os.makedirs(os.path.dirname(csv_path) or '.', exist_ok=True)
    lock_path = csv_path + '.lock'
    with open(lock_path, 'w', encoding='utf-8') as lf:
        portalocker.lock(lf, portalocker.LockFlags.EXCLUSIVE)
        try:
            rows = read_rows(csv_path)
            index = {_row_key(r, key_fields): i for i, r in enumerate(rows)}
            changed = []
            for row in new_rows:
                normalized = {k: '' if row.get(k) is None else str(row.get(k)) for k in fieldnames}
                key = _row_key(normalized, key_fields)
                pos = index.get(key)
                if pos is None:
                    index[key] = len(rows)
                    rows.append(normalized)
                    changed.append(True)
                elif all((rows[pos].get(k) or '') == normalized[k] for k in fieldnames):
                    changed.append(False)
                else:
                    rows[pos] = normalized
                    changed.append(True)

            if any(changed):
                _write_atomic(csv_path, rows, fieldnames)
            return changed
        finally:
            portalocker.unlock(lf)

