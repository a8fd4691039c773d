from concurrent.futures import ThreadPoolExecutor

import pytest

import web3_utils
from config import FatalStartup
from web3_utils import (
    ChainClient, EndpointDescriptor, NoEndpointAvailable, RetryPolicy, RpcError, call_with_retry,
)
from conftest import URLS


def test_next_rotates_round_robin_and_wraps(make_pool):
    pool = make_pool()
    urls = [pool.next().url for _ in range(2 * len(URLS))]
    assert urls == URLS + URLS


def test_rotation_returns_to_failed_endpoint_after_full_cycle(make_pool):
    pool = make_pool()
    first = pool.client()
    assert first.url == URLS[0]

    current = first
    seen = []
    for _ in range(len(URLS)):
        current = pool.rotate(current)
        seen.append(current.url)

    assert seen == URLS[1:] + URLS[:1]


def test_rotate_is_noop_for_stale_failed_client(make_pool):
    pool = make_pool()
    failed = pool.client()
    replacement = pool.rotate(failed)
    # a second worker reporting the same dead client must not skip an endpoint
    assert pool.rotate(failed) is replacement
    assert pool.client().url == URLS[1]


def test_validate_probes_block_number(chain, make_pool):
    pool = make_pool()
    chain.dead_urls.add(URLS[0])
    assert pool.validate(pool.endpoints[0]) is False
    assert pool.validate(pool.endpoints[1]) is True


def test_select_working_skips_dead_endpoints(chain, make_pool):
    chain.dead_urls.update(URLS[:2])
    pool = make_pool()
    client = pool.select_working()
    assert client.url == URLS[2]
    assert pool.client() is client


def test_select_working_rejects_wrong_chain(chain, make_pool):
    chain.chain_ids[URLS[0]] = 1
    pool = make_pool(expected_chain_id=33139)
    assert pool.select_working().url == URLS[1]


def test_select_working_raises_when_nothing_reachable(chain, make_pool):
    chain.dead_urls.update(URLS)
    pool = make_pool()
    with pytest.raises(NoEndpointAvailable) as exc_info:
        pool.select_working()
    assert isinstance(exc_info.value, FatalStartup)


def test_empty_pool_is_fatal(make_pool):
    pool = make_pool(urls=[])
    with pytest.raises(NoEndpointAvailable):
        pool.client()


def test_track_updates_provider_health(make_pool):
    pool = make_pool()
    pool.track(URLS[0], True, 0.25)
    pool.track(URLS[0], False, 0.1, "boom")
    state = pool.providers[URLS[0]]
    assert state.success_count == 1
    assert state.error_count == 1
    assert state.last_error == "boom"
    pool.log_status()


def test_track_from_worker_threads_keeps_every_count(make_pool):
    pool = make_pool()

    def hammer(i):
        for _ in range(500):
            pool.track(URLS[0], i % 2 == 0, 0.01, "boom")

    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(hammer, range(8)))

    state = pool.providers[URLS[0]]
    assert state.success_count == 2000
    assert state.error_count == 2000
    assert len(state.response_times) == 100


def test_call_with_retry_recovers(monkeypatch):
    monkeypatch.setattr(web3_utils.time, "sleep", lambda s: None)
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RpcError("https://x", TimeoutError("slow"))
        return "ok"

    assert call_with_retry(flaky, RetryPolicy(max_attempts=3, base_delay=1.0)) == "ok"
    assert len(attempts) == 3


def test_call_with_retry_backs_off_then_reraises(monkeypatch):
    delays = []
    monkeypatch.setattr(web3_utils.time, "sleep", delays.append)
    failures = []

    def always_fails():
        raise RpcError("https://x", TimeoutError("slow"))

    with pytest.raises(RpcError):
        call_with_retry(always_fails, RetryPolicy(max_attempts=3, base_delay=2.0), on_failure=failures.append)

    assert delays == [2.0, 4.0]
    assert len(failures) == 3


def test_chain_client_wraps_errors_and_tracks():
    tracked = []
    client = ChainClient(EndpointDescriptor("http://127.0.0.1:9", 0),
                         tracker=lambda url, ok, t, err: tracked.append((url, ok)))

    with pytest.raises(RpcError) as exc_info:
        client._call(lambda: 1 / 0)

    assert isinstance(exc_info.value.cause, ZeroDivisionError)
    assert exc_info.value.endpoint == "http://127.0.0.1:9"
    assert tracked == [("http://127.0.0.1:9", False)]


def test_chain_client_without_contracts_raises_rpc_error():
    client = ChainClient(EndpointDescriptor("http://127.0.0.1:9", 0))
    with pytest.raises(RpcError):
        client.owner_of(1)
    with pytest.raises(RpcError):
        client.query_events("OrderValidated", 0, 10)
