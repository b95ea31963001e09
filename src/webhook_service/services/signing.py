"""HMAC-SHA256 signing of webhook payloads.

The signed bytes are the canonical JSON encoding of the payload: keys sorted,
no insignificant whitespace, UTF-8 without ASCII escaping. The same bytes are
sent as the request body, so a receiver can verify either by hashing the raw
body or by re-encoding the parsed JSON the same way.
"""
from __future__ import annotations

import hmac
import json
import secrets
from hashlib import sha256
from typing import Any

SECRET_PREFIX = "whsec_"


def canonical_json(payload: Any) -> bytes:
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def generate_webhook_secret() -> str:
    return SECRET_PREFIX + secrets.token_hex(32)


class SignatureSigner:
    @staticmethod
    def sign(secret: str, payload: Any) -> str:
        """Hex HMAC-SHA256 of ``canonical_json(payload)`` keyed by *secret*."""
        return SignatureSigner.sign_bytes(secret, canonical_json(payload))

    @staticmethod
    def sign_bytes(secret: str, body: bytes) -> str:
        return hmac.new(secret.encode("utf-8"), body, sha256).hexdigest()

    @staticmethod
    def verify(secret: str, body: bytes, signature: str) -> bool:
        return hmac.compare_digest(SignatureSigner.sign_bytes(secret, body), signature)
