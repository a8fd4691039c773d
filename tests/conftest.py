import pytest

from web3_utils import EndpointPool, RpcError

NFT = "0x1111111111111111111111111111111111111111"
SEAPORT = "0x0000000000000068f116a894984e2db1123eb395"
URLS = ["https://primary.example", "https://rpc.apechain.com/http", "https://apechain.drpc.org"]


class FakeChain:
    """In-memory stand-in for the NFT + Seaport contracts behind several RPC urls."""

    def __init__(self, owners=None, uris=None, logs=None, latest_block=0, chain_id=33139):
        self.owners = dict(owners or {})
        self.uris = dict(uris or {})
        self.logs = dict(logs or {})
        self.latest_block = latest_block
        self.chain_ids = {}
        self.default_chain_id = chain_id
        self.dead_urls = set()
        self.bad_tokens = set()
        self.bad_windows = set()
        self.shuffle_logs = False
        self.calls = []

    def factory(self, descriptor):
        return FakeClient(self, descriptor)

    def calls_for(self, method):
        return [c for c in self.calls if c[1] == method]


class FakeClient:
    def __init__(self, chain, descriptor):
        self.chain = chain
        self.descriptor = descriptor
        self.url = descriptor.url

    def _check(self, method, *args):
        self.chain.calls.append((self.url, method) + args)
        if self.url in self.chain.dead_urls:
            raise RpcError(self.url, ConnectionError("endpoint down"))

    def owner_of(self, token_id):
        self._check("ownerOf", token_id)
        if token_id in self.chain.bad_tokens:
            raise RpcError(self.url, ValueError("execution reverted"))
        return self.chain.owners[token_id]

    def token_uri(self, token_id):
        self._check("tokenURI", token_id)
        return self.chain.uris.get(token_id, "")

    def total_supply(self):
        self._check("totalSupply")
        return len(self.chain.owners)

    def block_number(self):
        self._check("blockNumber")
        return self.chain.latest_block

    def chain_id(self):
        self._check("chainId")
        return self.chain.chain_ids.get(self.url, self.chain.default_chain_id)

    def query_events(self, event_name, from_block, to_block):
        self._check("getLogs", event_name, from_block, to_block)
        if (event_name, from_block, to_block) in self.chain.bad_windows:
            raise RpcError(self.url, ValueError("query timeout"))
        found = [l for l in self.chain.logs.get(event_name, []) if from_block <= l["blockNumber"] <= to_block]
        if self.chain.shuffle_logs:
            found = list(reversed(found))
        return found


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def raise_for_status(self):
        import requests
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """Records requests; `routes` maps url -> FakeResponse or Exception."""

    def __init__(self, routes=None, default=None):
        self.routes = dict(routes or {})
        self.default = default
        self.requests = []

    def _respond(self, url):
        result = self.routes.get(url, self.default)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return FakeResponse(404, text="not found")
        return result

    def get(self, url, **kwargs):
        self.requests.append(("GET", url, kwargs))
        return self._respond(url)

    def post(self, url, **kwargs):
        self.requests.append(("POST", url, kwargs))
        return self._respond(url)


def order_log(event, order_hash, block, log_index=0, offerer="0xAbCd000000000000000000000000000000000001",
              fulfiller=None, offer=None, consideration=None):
    args = {"orderHash": order_hash, "offerer": offerer}
    if event != "OrderCancelled":
        args["zone" if event == "OrderValidated" else "fulfiller"] = fulfiller or "0x" + "00" * 20
        args["offer"] = offer if offer is not None else []
        args["consideration"] = consideration if consideration is not None else []
    return {"event": event, "args": args, "blockNumber": block, "logIndex": log_index}


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def make_pool(chain):
    def _make(urls=None, **kwargs):
        return EndpointPool(list(URLS if urls is None else urls), client_factory=chain.factory, **kwargs)
    return _make
