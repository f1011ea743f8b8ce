"""
Signature & Rate Guard — first stop for every webhook request.

  - ``verify_signature``  HMAC-SHA256 over the raw body, constant-time compare
  - ``verify_handshake``  GET subscription challenge with the verify token
  - ``SlidingWindowRateLimiter``  per-source-IP request budget

The rate limiter runs before signature verification so abusive clients
are turned away without spending CPU on HMAC.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import threading
import time
from typing import Callable, Mapping

from postop.gateway.errors import AuthenticationError, ConfigurationError, RateLimited

logger = logging.getLogger("gateway.security")

SIGNATURE_HEADER = "x-hub-signature-256"
SIGNATURE_PREFIX = "sha256="


def verify_signature(raw_body: bytes, signature_header: str | None, secret: str) -> None:
    """Raise AuthenticationError unless the header signs ``raw_body``."""
    if not secret:
        raise ConfigurationError("Webhook signing secret is not configured")
    if not signature_header:
        raise AuthenticationError("Missing signature header")

    claimed = signature_header.strip()
    if claimed.lower().startswith(SIGNATURE_PREFIX):
        claimed = claimed[len(SIGNATURE_PREFIX):]
    if not claimed:
        raise AuthenticationError("Malformed signature header")

    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, claimed.lower()):
        logger.warning("Webhook signature mismatch")
        raise AuthenticationError("Invalid signature")


def verify_handshake(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str,
) -> str:
    """Return the challenge to echo back, or raise AuthenticationError."""
    if not expected_token:
        raise ConfigurationError("Webhook verify token is not configured")
    if mode != "subscribe" or not token or challenge is None:
        raise AuthenticationError("Invalid subscription handshake")
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        logger.warning("Webhook verify token mismatch")
        raise AuthenticationError("Verify token mismatch")
    return challenge


def client_ip(headers: Mapping[str, str], peer: str | None) -> str:
    """Best-effort source address: proxy headers first, then the socket peer."""
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return peer or "unknown"


class SlidingWindowRateLimiter:
    """
    Sliding-window counter keyed by source address.

    ``check(key)`` records the request and raises RateLimited when the key
    has already used ``max_requests`` in the last ``window_seconds``.
    Rejected requests are not counted.

    Keys come from client-supplied headers, so the map is swept of idle
    keys once per window and capped at ``max_keys`` (oldest first out).
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = 10_000,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._max_keys = max(1, max_keys)
        self._hits: dict[str, list[float]] = {}
        self._next_sweep = clock() + window_seconds
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self._max_requests

    @property
    def window_seconds(self) -> float:
        return self._window

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def check(self, key: str) -> None:
        now = self._clock()
        cutoff = now - self._window
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(cutoff)
                self._next_sweep = now + self._window

            timestamps = [t for t in self._hits.get(key, []) if t > cutoff]

            if len(timestamps) >= self._max_requests:
                self._hits[key] = timestamps
                retry_after = max(1, math.ceil(timestamps[0] + self._window - now))
                logger.warning(
                    "Rate limit exceeded for %s (%d requests in %ss)",
                    key, len(timestamps), self._window,
                )
                raise RateLimited(retry_after=retry_after)

            timestamps.append(now)
            is_new = key not in self._hits
            self._hits[key] = timestamps
            if is_new and len(self._hits) > self._max_keys:
                self._evict(cutoff)

    def prune(self) -> int:
        """Drop keys with no hits inside the window.  Returns how many went."""
        cutoff = self._clock() - self._window
        with self._lock:
            return self._sweep(cutoff)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    # Callers hold self._lock

    def _sweep(self, cutoff: float) -> int:
        stale = [k for k, ts in self._hits.items() if not ts or ts[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug("Rate limiter swept %d idle keys", len(stale))
        return len(stale)

    def _evict(self, cutoff: float) -> None:
        self._sweep(cutoff)
        overflow = len(self._hits) - self._max_keys
        if overflow <= 0:
            return
        for key in list(self._hits)[:overflow]:
            del self._hits[key]
        logger.warning(
            "Rate limiter tracking more than %d addresses — evicted %d oldest",
            self._max_keys, overflow,
        )
