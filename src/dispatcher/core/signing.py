"""Signed completion links.

A link carries ``aid`` (activity), optional ``did`` (deal) and ``cid``
(channel), an ``exp`` Unix-seconds expiry, and ``sig``: unpadded base64url
HMAC-SHA-256 over ``"{aid}.{did}.{cid}.{exp}"`` with empty fields kept in
position.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any
from urllib.parse import urlencode

from dispatcher.core.clock import Clock


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def raw_for(aid: Any, did: Any = "", cid: Any = "", exp: Any = "") -> str:
    return f"{aid}.{did or ''}.{cid or ''}.{exp}"


class LinkSigner:
    def __init__(self, secret: str, base_url: str, clock: Clock, ttl_s: int = 7 * 24 * 60 * 60) -> None:
        self._key = secret.encode("utf-8")
        self.base_url = base_url.rstrip("/")
        self.ttl_s = ttl_s
        self._clock = clock

    def sign(self, raw: str) -> str:
        return b64url(hmac.new(self._key, raw.encode("utf-8"), hashlib.sha256).digest())

    def verify(self, raw: Any, sig: Any) -> bool:
        """Constant-time check. Never raises."""
        try:
            expected = self.sign(str(raw)).encode("ascii")
            received = str(sig).encode("utf-8")
            if len(expected) != len(received):
                return False
            return hmac.compare_digest(expected, received)
        except Exception:
            return False

    def completion_url(self, aid: Any, did: Any = "", cid: Any = "", ttl_s: int | None = None) -> str:
        exp = int(self._clock.timestamp()) + (self.ttl_s if ttl_s is None else ttl_s)
        params: dict[str, str] = {
            "aid": str(aid),
            "exp": str(exp),
            "sig": self.sign(raw_for(aid, did, cid, exp)),
        }
        if did:
            params["did"] = str(did)
        if cid:
            params["cid"] = str(cid)
        return f"{self.base_url}/complete?{urlencode(params)}"

    def is_expired(self, exp: Any) -> bool:
        try:
            return int(exp) < int(self._clock.timestamp())
        except (TypeError, ValueError):
            return True
