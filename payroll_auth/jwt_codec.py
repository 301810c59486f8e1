"""HS256 JSON Web Token helpers.

Tokens are compact JWS strings ``header.payload.signature``. ``decode_jwt``
verifies algorithm, signature and expiry. ``decode_unverified`` only parses the
payload and must be used on tokens whose signature was already checked by the
caller.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Optional

from payroll_auth.logging import get_logger

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}
# Issued tokens are a few hundred bytes; anything far larger is not ours
_MAX_SEGMENT_LENGTH = 8192


class InvalidTokenError(Exception):
    """Token is malformed, uses another algorithm or has a bad signature."""


class ExpiredTokenError(InvalidTokenError):
    """Token signature is valid but its ``exp`` claim has passed."""


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _load_segment(segment: str) -> Any:
    if len(segment) > _MAX_SEGMENT_LENGTH:
        raise ValueError("segment too long")
    try:
        return json.loads(_decode_segment(segment))
    except RecursionError:
        raise ValueError("segment nested too deeply")


def _sign(signing_input: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


def encode_jwt(payload: dict[str, Any], secret: str) -> str:
    header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(signing_input, secret)}"


def decode_unverified(token: Optional[str]) -> Optional[dict[str, Any]]:
    """Return the payload claims without checking the signature.

    Returns None for anything that is not a three-segment token with a JSON
    object payload.
    """
    if not token or not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        payload = _load_segment(parts[1])
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def decode_jwt(
    token: str, secret: str, *, leeway: int = 0, now: Optional[float] = None
) -> dict[str, Any]:
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except (AttributeError, ValueError):
        raise InvalidTokenError("token is not a compact JWS")

    try:
        header = _load_segment(header_b64)
    except (ValueError, UnicodeDecodeError):
        logger.warning("jwt_header_decode_failed")
        raise InvalidTokenError("token header is not valid JSON")
    # Reject "none" and asymmetric algorithms outright
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        logger.warning(
            "jwt_invalid_algorithm",
            alg=header.get("alg") if isinstance(header, dict) else None,
        )
        raise InvalidTokenError("unsupported signing algorithm")

    expected_sig = _sign(f"{header_b64}.{payload_b64}", secret)
    if not hmac.compare_digest(expected_sig, sig_b64):
        raise InvalidTokenError("signature mismatch")

    payload = decode_unverified(token)
    if payload is None:
        raise InvalidTokenError("token payload is not a JSON object")

    exp = payload.get("exp")
    if exp is not None:
        if not isinstance(exp, (int, float)):
            raise InvalidTokenError("exp claim must be numeric")
        current = time.time() if now is None else now
        if exp + leeway <= current:
            raise ExpiredTokenError("token has expired")
    return payload


__all__ = [
    "InvalidTokenError",
    "ExpiredTokenError",
    "encode_jwt",
    "decode_jwt",
    "decode_unverified",
]
