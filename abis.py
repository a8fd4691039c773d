"""
Shared contract ABIs (ERC-721 view functions + Seaport order events)
"""

ERC721_ABI = [
    {"inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}], "name": "ownerOf",
     "outputs": [{"internalType": "address", "name": "", "type": "address"}], "stateMutability": "view", "type": "function"},
    {"inputs": [], "name": "totalSupply",
     "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}], "name": "tokenURI",
     "outputs": [{"internalType": "string", "name": "", "type": "string"}], "stateMutability": "view", "type": "function"},
]

# Seaport item structs: offer items carry a conduit, consideration items a recipient
_OFFER_ITEM = {
    "components": [
        {"internalType": "address", "name": "token", "type": "address"},
        {"internalType": "address", "name": "conduit", "type": "address"},
        {"internalType": "uint256", "name": "identifier", "type": "uint256"},
        {"internalType": "uint256", "name": "startAmount", "type": "uint256"},
        {"internalType": "uint256", "name": "endAmount", "type": "uint256"},
    ],
    "indexed": False, "internalType": "struct OfferItem[]", "name": "offer", "type": "tuple[]",
}

_CONSIDERATION_ITEM = {
    "components": [
        {"internalType": "address", "name": "token", "type": "address"},
        {"internalType": "address", "name": "recipient", "type": "address"},
        {"internalType": "uint256", "name": "identifier", "type": "uint256"},
        {"internalType": "uint256", "name": "startAmount", "type": "uint256"},
        {"internalType": "uint256", "name": "endAmount", "type": "uint256"},
    ],
    "indexed": False, "internalType": "struct ConsiderationItem[]", "name": "consideration", "type": "tuple[]",
}

SEAPORT_ABI = [
    {"anonymous": False, "inputs": [
        {"indexed": True, "internalType": "bytes32", "name": "orderHash", "type": "bytes32"},
        {"indexed": True, "internalType": "address", "name": "offerer", "type": "address"},
        {"indexed": True, "internalType": "address", "name": "zone", "type": "address"},
        _OFFER_ITEM,
        _CONSIDERATION_ITEM,
    ], "name": "OrderValidated", "type": "event"},
    {"anonymous": False, "inputs": [
        {"indexed": True, "internalType": "bytes32", "name": "orderHash", "type": "bytes32"},
        {"indexed": True, "internalType": "address", "name": "offerer", "type": "address"},
        {"indexed": True, "internalType": "address", "name": "fulfiller", "type": "address"},
        _OFFER_ITEM,
        _CONSIDERATION_ITEM,
    ], "name": "OrderFulfilled", "type": "event"},
    {"anonymous": False, "inputs": [
        {"indexed": True, "internalType": "bytes32", "name": "orderHash", "type": "bytes32"},
        {"indexed": True, "internalType": "address", "name": "offerer", "type": "address"},
    ], "name": "OrderCancelled", "type": "event"},
]

# Scan order for an order-log resync: listings first, then terminal states
ORDER_EVENT_NAMES = ["OrderValidated", "OrderFulfilled", "OrderCancelled"]
