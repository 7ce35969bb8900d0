"""
HTTP upgrade handshake for WebSocket connections (RFC 6455, Section 4.2).
"""
import base64
import hashlib
import logging
from typing import Dict, Optional, Union
from ._constants import ACCEPT_GUID


logger = logging.getLogger("wsrcon.handshake")

HEADER_TERMINATOR = b"\r\n\r\n"
WEBSOCKET_UPGRADE = "websocket"


def parse_http_headers(request: Union[str, bytes]) -> Dict[str, str]:
    """
    Parse the header lines of an HTTP request. Keys are lower-cased and trimmed.
    Duplicate headers overwrite each other (last one wins).
    """
    if isinstance(request, (bytes, bytearray)):
        request = bytes(request).decode("latin-1")
    headers = {}
    for line in request.split("\r\n"):
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()
    return headers


def validate(headers: Union[Dict[str, str], str, bytes]) -> bool:
    if not isinstance(headers, dict):
        headers = parse_http_headers(headers)
    if "sec-websocket-key" not in headers:
        logger.debug("Handshake failed: missing header, Sec-WebSocket-Key")
        return False
    upgrade = headers.get("upgrade")
    if upgrade is None or upgrade.lower() != WEBSOCKET_UPGRADE:
        logger.debug(f"Handshake failed: missing or invalid Upgrade header: {upgrade or 'not set'}")
        return False
    return True


def compute_accept_key(key: str) -> str:
    return base64.b64encode(
        hashlib.sha1((key + ACCEPT_GUID).encode("ascii")).digest()).decode("ascii")


def build_response(accept_key: str) -> bytes:
    response_headers = [
        ("Upgrade", WEBSOCKET_UPGRADE),
        ("Connection", "Upgrade"),
        ("Sec-WebSocket-Accept", accept_key),
    ]
    message = b"HTTP/1.1 101 Switching Protocols\r\n"
    for key, value in response_headers:
        message += f"{key}: {value}\r\n".encode("ascii")
    message += b"\r\n"
    return message


def perform_handshake(request: Union[str, bytes]) -> Optional[bytes]:
    """
    Validate the upgrade request and build the ``101 Switching Protocols`` response.
    Returns ``None`` if the request is not a valid WebSocket upgrade.
    """
    headers = parse_http_headers(request)
    if not validate(headers):
        return None
    key = headers["sec-websocket-key"]
    try:
        accept_key = compute_accept_key(key)
    except UnicodeEncodeError:
        logger.debug("Handshake failed: Sec-WebSocket-Key is not ASCII")
        return None
    logger.debug(f"WebSocket key: {key}, accept key: {accept_key}")
    return build_response(accept_key)
