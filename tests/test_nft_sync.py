import threading
import time

from concurrent.futures import ThreadPoolExecutor

import pytest

from nft_sync import (
    OwnershipRecord, TokenResult, fetch_owner_and_uri, iter_token_batches, process_token,
    run_ownership_sync, sync_batch,
)
from web3_utils import RpcError
from conftest import FakeResponse, FakeSession, NFT, URLS

OWNER = "0xAAaA000000000000000000000000000000000001"


def meta_session(names):
    return FakeSession({f"https://meta.example/{i}": FakeResponse(200, {"name": n}) for i, n in names.items()})


def test_iter_token_batches():
    assert [len(b) for b in iter_token_batches(45, 20)] == [20, 20, 5]
    assert list(iter_token_batches(0, 20)) == []
    assert list(iter_token_batches(3, 2)) == [[0, 1], [2]]


def test_fetch_owner_rotates_and_gives_up_after_each_endpoint(chain, make_pool):
    chain.owners = {0: OWNER}
    chain.bad_tokens.add(0)
    pool = make_pool()

    with pytest.raises(RpcError, match="execution reverted"):
        fetch_owner_and_uri(pool, 0)

    assert [c[0] for c in chain.calls_for("ownerOf")] == URLS


def test_process_token_uses_fallback_endpoint(chain, make_pool):
    chain.owners = {5: OWNER}
    chain.uris = {5: "https://meta.example/5"}
    chain.dead_urls.add(URLS[0])

    result = process_token(make_pool(), 5, NFT, session=meta_session({5: "Five"}))

    assert result.ok
    assert result.record == OwnershipRecord(5, NFT, OWNER.lower(), "Five")


def test_metadata_failure_still_produces_record(chain, make_pool):
    chain.owners = {1: OWNER}
    chain.uris = {1: "https://meta.example/1"}

    result = process_token(make_pool(), 1, NFT, session=FakeSession(default=FakeResponse(502)))

    assert result.ok
    assert result.record.display_name is None


def test_one_failing_token_does_not_affect_siblings(chain, make_pool):
    chain.owners = {0: OWNER, 1: OWNER, 2: OWNER}
    chain.uris = {i: f"https://meta.example/{i}" for i in range(3)}
    chain.bad_tokens.add(1)

    batches = list(run_ownership_sync(make_pool(), NFT, 3, batch_size=20, session=meta_session({0: "A", 2: "C"})))

    results = batches[0]
    assert [r.token_id for r in results] == [0, 1, 2]
    assert [r.ok for r in results] == [True, False, True]
    assert results[0].record.display_name == "A"
    assert results[2].record.display_name == "C"
    assert results[1].error


def test_batches_run_in_ascending_order(chain, make_pool):
    chain.owners = {i: OWNER for i in range(7)}
    batches = list(run_ownership_sync(make_pool(), NFT, 7, batch_size=3, session=FakeSession()))
    assert [[r.token_id for r in b] for b in batches] == [[0, 1, 2], [3, 4, 5], [6]]


def test_sync_batch_waits_for_all_and_isolates_crashes():
    running = []
    peak = []
    lock = threading.Lock()

    def worker(token_id):
        with lock:
            running.append(token_id)
            peak.append(len(running))
        time.sleep(0.01)
        with lock:
            running.remove(token_id)
        if token_id == 2:
            raise KeyError("unexpected")
        return TokenResult(token_id, record=OwnershipRecord(token_id, NFT, OWNER.lower()))

    with ThreadPoolExecutor(max_workers=4) as executor:
        results = sync_batch(executor, [0, 1, 2, 3], worker)

    assert running == []
    assert max(peak) <= 4
    assert [r.ok for r in results] == [True, True, False, True]


def test_ownership_record_row_and_key():
    record = OwnershipRecord(3, NFT, OWNER.lower(), None)
    assert record.key == (NFT.lower(), 3)
    assert record.to_row() == {"token_id": "3", "nft_contract": NFT, "owner_address": OWNER.lower(), "name": None}
