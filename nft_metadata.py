"""
Off-chain NFT metadata: tokenURI normalization and best-effort name lookup
"""
from typing import Any, Dict, Optional
from urllib.parse import unquote
import base64
import json
import logging

import requests

from config import ARWEAVE_GATEWAY, IPFS_GATEWAY, METADATA_TIMEOUT

logger = logging.getLogger(__name__)


def resolve_token_uri(uri: Optional[str], ipfs_gateway: str = IPFS_GATEWAY) -> Optional[str]:
    """Rewrite content-addressed URIs (ipfs://, ar://) to HTTP gateway URLs."""
    if not uri:
        return None
    uri = uri.strip()
    gateway = ipfs_gateway if ipfs_gateway.endswith('/') else ipfs_gateway + '/'
    lowered = uri.lower()
    if lowered.startswith('ipfs://'):
        path = uri[len('ipfs://'):]
        if path.lower().startswith('ipfs/'):
            path = path[len('ipfs/'):]
        return gateway + path
    if lowered.startswith('ar://'):
        return ARWEAVE_GATEWAY + uri[len('ar://'):]
    return uri


def _decode_data_uri(uri: str) -> Optional[Dict[str, Any]]:
    # data:application/json;base64,<payload>  or  data:application/json,<urlencoded>
    header, _, payload = uri.partition(',')
    if ';base64' in header:
        raw = base64.b64decode(payload).decode('utf-8')
    else:
        raw = unquote(payload)
    return json.loads(raw)


def _name_from(metadata: Any) -> Optional[str]:
    if not isinstance(metadata, dict):
        return None
    name = metadata.get('name')
    if name is None or name == '':
        return None
    return str(name)


def fetch_display_name(
    uri: Optional[str],
    session: Optional[requests.Session] = None,
    timeout: float = METADATA_TIMEOUT,
    ipfs_gateway: str = IPFS_GATEWAY,
) -> Optional[str]:
    """Return metadata `name` for a tokenURI, or None on any failure."""
    url = resolve_token_uri(uri, ipfs_gateway)
    if not url:
        return None
    try:
        if url.lower().startswith('data:'):
            return _name_from(_decode_data_uri(url))
        http = session or requests
        resp = http.get(url, timeout=timeout)
        resp.raise_for_status()
        return _name_from(resp.json())
    except (requests.exceptions.RequestException, ValueError, UnicodeDecodeError) as e:
        logger.warning("[Metadata] fetch error for %s: %s", url[:120], str(e)[:120])
        return None
