"""Web Push transport over ``pywebpush``.

Credentials are scoped per site: ``WebPushTransport.configure`` returns a
``WebPushSender`` bound to one VAPID key pair.  Nothing is stored on the
transport itself, so senders for different sites can run side by side.

Safety: endpoints and subscription keys are never logged.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import requests
from pywebpush import WebPushException, webpush

from pushcast.core.errors import ConfigurationError, TransportError


@dataclass(frozen=True)
class SubscriptionKeys:
    p256dh: str
    auth: str


class PushSender(Protocol):
    def send(self, endpoint: str, keys: SubscriptionKeys, payload: bytes) -> None:
        """Deliver *payload*; raise ``TransportError`` on failure."""
        ...


class PushTransport(Protocol):
    def configure(self, public_key: str | None, private_key: str | None) -> PushSender:
        ...


@dataclass
class WebPushSender:
    private_key: str
    vapid_subject: str
    ttl: int = 86400
    timeout: float | None = None

    def send(self, endpoint: str, keys: SubscriptionKeys, payload: bytes) -> None:
        subscription_info = {
            "endpoint": endpoint,
            "keys": {"p256dh": keys.p256dh, "auth": keys.auth},
        }
        try:
            webpush(
                subscription_info=subscription_info,
                data=payload,
                vapid_private_key=self.private_key,
                # pywebpush adds ``aud``/``exp`` to the claims dict it is given
                vapid_claims={"sub": self.vapid_subject},
                ttl=self.ttl,
                timeout=self.timeout,
            )
        except WebPushException as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            raise TransportError.from_status(_describe(exc, status_code), status_code) from exc
        except requests.RequestException as exc:
            raise TransportError.from_status(f"Push request failed: {type(exc).__name__}", None) from exc
        except ValueError as exc:
            # Malformed subscription keys or payload encryption failure.
            raise TransportError.from_status(f"Push payload rejected: {exc}", None) from exc


class WebPushTransport:
    """Factory for per-site ``WebPushSender`` instances."""

    def __init__(
        self,
        vapid_subject: str,
        ttl: int = 86400,
        timeout: float | None = None,
    ) -> None:
        self.vapid_subject = vapid_subject
        self.ttl = ttl
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> WebPushTransport:
        return cls(
            vapid_subject=settings.vapid_subject,
            ttl=settings.push_ttl_seconds,
            timeout=settings.push_timeout_seconds,
        )

    def configure(self, public_key: str | None, private_key: str | None) -> WebPushSender:
        if not public_key or not private_key:
            raise ConfigurationError("Site has no VAPID key pair configured")
        return WebPushSender(
            private_key=private_key,
            vapid_subject=self.vapid_subject,
            ttl=self.ttl,
            timeout=self.timeout,
        )


def _describe(exc: WebPushException, status_code: int | None) -> str:
    if status_code is None:
        return f"Push failed: {exc.message}"
    reason = getattr(exc.response, "reason", "") or ""
    return f"Push service returned {status_code} {reason}".rstrip()
