"""
Seaport order event normalization

Turns decoded OrderValidated / OrderFulfilled / OrderCancelled logs into
OrderEvent records. Offer and consideration items arrive either as named
structs or positional tuples depending on the web3 version, and order types
differ in which arrays are populated, so every nested field lookup degrades
to None instead of raising.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple
import logging

from config import DEFAULT_TOKEN_DECIMALS, TOKEN_DECIMALS

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


EVENT_STATUS = {
    "OrderValidated": OrderStatus.ACTIVE,
    "OrderFulfilled": OrderStatus.FULFILLED,
    "OrderCancelled": OrderStatus.CANCELLED,
}

# Positions inside an item tuple: (token, conduit|recipient, identifier, startAmount, endAmount)
ITEM_TOKEN = 0
ITEM_IDENTIFIER = 2
ITEM_START_AMOUNT = 3


@dataclass
class OrderEvent:
    order_hash: str
    contract_address: str
    marketplace_address: str
    status: OrderStatus
    source_block: int
    seller_address: Optional[str] = None
    buyer_address: Optional[str] = None
    token_id: Optional[str] = None
    price: Optional[str] = None
    log_index: int = 0
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, str]:
        # One record per status transition of an order
        return (self.order_hash, self.status.value)

    @property
    def position(self) -> Tuple[int, int]:
        return (self.source_block, self.log_index)

    def to_payload(self) -> Dict[str, Any]:
        """JSON body for the backend order endpoint."""
        return {
            "tokenId": self.token_id,
            "price": self.price,
            "sellerAddress": self.seller_address,
            "buyerAddress": self.buyer_address,
            "seaportOrder": self.raw_payload,
            "orderHash": self.order_hash,
            "image": None,
            "nftContract": self.contract_address,
            "marketplaceContract": self.marketplace_address,
            "status": self.status.value,
            "onChainBlock": self.source_block,
            "eventKey": f"{self.order_hash}:{self.status.value}",
        }


def format_units(value: Any, decimals: int = DEFAULT_TOKEN_DECIMALS) -> str:
    """Fixed-point decimal string, e.g. 10**18 with 18 decimals -> "1.0"."""
    value = int(value)
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10 ** decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0") if decimals > 0 else ""
    return f"{sign}{whole}.{frac_str or '0'}"


def token_decimals(token_address: Optional[str]) -> int:
    if not token_address:
        return DEFAULT_TOKEN_DECIMALS
    return TOKEN_DECIMALS.get(str(token_address).lower(), DEFAULT_TOKEN_DECIMALS)


def hex_string(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        h = bytes(value).hex()
        return h if h.startswith("0x") else "0x" + h
    if hasattr(value, "hex") and not isinstance(value, str):
        h = value.hex()
        return h if h.startswith("0x") else "0x" + h
    return str(value)


def _lower(value: Any) -> Optional[str]:
    if not value:
        return None
    try:
        return str(value).lower()
    except Exception:
        return None


def _get(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _first(items: Any) -> Any:
    try:
        return items[0] if items else None
    except (IndexError, KeyError, TypeError):
        return None


def _item_field(item: Any, name: str, position: int) -> Any:
    if item is None:
        return None
    try:
        if isinstance(item, Mapping):
            return item.get(name)
        return item[position]
    except (IndexError, KeyError, TypeError):
        return None


def _jsonable(value: Any) -> Any:
    """Make decoded ABI values JSON-safe: bytes -> hex, uint256 -> decimal string."""
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, bool) or value is None or isinstance(value, (str, float)):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (bytes, bytearray)) or hasattr(value, "hex"):
        return hex_string(value)
    return str(value)


def _token_id(offer_item: Any) -> Optional[str]:
    identifier = _item_field(offer_item, "identifier", ITEM_IDENTIFIER)
    if identifier is None:
        return None
    try:
        return str(int(identifier))
    except (TypeError, ValueError):
        return None


def _price(consideration_item: Any, decimals_for: Callable[[Optional[str]], int]) -> Optional[str]:
    amount = _item_field(consideration_item, "startAmount", ITEM_START_AMOUNT)
    if amount is None:
        return None
    try:
        token = _item_field(consideration_item, "token", ITEM_TOKEN)
        return format_units(amount, decimals_for(token))
    except (TypeError, ValueError) as exc:
        logger.debug("[Orders] Unparseable consideration amount %r: %s", amount, exc)
        return None


def normalize_event(
    log: Mapping,
    event_name: Optional[str],
    nft_contract: str,
    marketplace_contract: str,
    decimals_for: Callable[[Optional[str]], int] = token_decimals,
) -> Optional[OrderEvent]:
    """Decode one Seaport log into an OrderEvent.

    Returns None only when the log cannot be keyed (unknown event or no
    orderHash); missing offer/consideration data just leaves fields empty.
    """
    event_name = event_name or _get(log, "event")
    status = EVENT_STATUS.get(event_name)
    if status is None:
        logger.warning("[Orders] Unknown event %r at block %s", event_name, _get(log, "blockNumber"))
        return None

    args = _get(log, "args") or {}
    order_hash = hex_string(_get(args, "orderHash"))
    if not order_hash:
        logger.warning("[Orders] %s without orderHash at block %s", event_name, _get(log, "blockNumber"))
        return None

    try:
        source_block = int(_get(log, "blockNumber") or 0)
        log_index = int(_get(log, "logIndex") or 0)
    except (TypeError, ValueError):
        source_block, log_index = 0, 0

    event = OrderEvent(
        order_hash=order_hash,
        contract_address=nft_contract,
        marketplace_address=marketplace_contract,
        status=status,
        source_block=source_block,
        log_index=log_index,
        seller_address=_lower(_get(args, "offerer")),
    )

    if status is OrderStatus.CANCELLED:
        event.raw_payload = {"orderHash": order_hash}
        return event

    offer_item = _first(_get(args, "offer"))
    consideration_item = _first(_get(args, "consideration"))
    event.token_id = _token_id(offer_item)
    event.price = _price(consideration_item, decimals_for)
    if status is OrderStatus.FULFILLED:
        event.buyer_address = _lower(_get(args, "fulfiller"))
    event.raw_payload = {"orderHash": order_hash, "parameters": _jsonable(args)}
    return event


def latest_by_order(events: Iterable[OrderEvent]) -> Dict[str, OrderEvent]:
    """Final event per orderHash, by highest (block, logIndex)."""
    latest: Dict[str, OrderEvent] = {}
    for event in events:
        current = latest.get(event.order_hash)
        if current is None or event.position >= current.position:
            latest[event.order_hash] = event
    return latest
