from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import requests
from pywebpush import WebPushException

from pushcast.core.errors import (
    ConfigurationError,
    PermanentTransportError,
    TransientTransportError,
    TransportError,
)
from pushcast.push.transport import SubscriptionKeys, WebPushTransport
from tests.factories import make_settings

ENDPOINT = "https://fcm.googleapis.com/fcm/send/abc123"
KEYS = SubscriptionKeys(p256dh="BNcRd-p256dh", auth="tBHItJI5svbpez7KI4CCXg")


def _sender(**kwargs):
    transport = WebPushTransport(vapid_subject="mailto:ops@example.com", **kwargs)
    return transport.configure("BPublicKey", "private-key")


def _push_error(status_code: int, reason: str = "") -> WebPushException:
    response = SimpleNamespace(status_code=status_code, reason=reason)
    return WebPushException(f"Push failed: {status_code} {reason}", response=response)


class TestConfigure:
    def test_requires_both_keys(self):
        transport = WebPushTransport(vapid_subject="mailto:ops@example.com")
        with pytest.raises(ConfigurationError):
            transport.configure(None, "private-key")
        with pytest.raises(ConfigurationError):
            transport.configure("BPublicKey", "")

    def test_from_settings(self):
        transport = WebPushTransport.from_settings(
            make_settings(VAPID_SUBJECT="mailto:push@example.com", PUSH_TTL_SECONDS=600, PUSH_TIMEOUT_SECONDS=5)
        )
        assert (transport.vapid_subject, transport.ttl, transport.timeout) == ("mailto:push@example.com", 600, 5)

    def test_senders_are_scoped_per_site(self):
        transport = WebPushTransport(vapid_subject="mailto:ops@example.com")
        first = transport.configure("BPublicA", "private-a")
        second = transport.configure("BPublicB", "private-b")
        assert (first.private_key, second.private_key) == ("private-a", "private-b")


class TestSend:
    @patch("pushcast.push.transport.webpush")
    def test_passes_subscription_and_vapid_claims(self, mock_webpush):
        _sender(ttl=3600, timeout=10).send(ENDPOINT, KEYS, b'{"title": "Hi"}')

        kwargs = mock_webpush.call_args.kwargs
        assert kwargs["subscription_info"] == {
            "endpoint": ENDPOINT,
            "keys": {"p256dh": KEYS.p256dh, "auth": KEYS.auth},
        }
        assert kwargs["data"] == b'{"title": "Hi"}'
        assert kwargs["vapid_private_key"] == "private-key"
        assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.com"}
        assert kwargs["ttl"] == 3600
        assert kwargs["timeout"] == 10

    @patch("pushcast.push.transport.webpush")
    def test_claims_are_fresh_per_send(self, mock_webpush):
        def _mutate_claims(**kwargs):
            kwargs["vapid_claims"]["aud"] = "https://fcm.googleapis.com"

        mock_webpush.side_effect = _mutate_claims
        sender = _sender()
        sender.send(ENDPOINT, KEYS, b"{}")
        sender.send("https://updates.push.services.mozilla.com/wpush/v2/x", KEYS, b"{}")

        second_claims = mock_webpush.call_args_list[1].kwargs["vapid_claims"]
        assert second_claims["sub"] == "mailto:ops@example.com"

    @pytest.mark.parametrize("status_code", [404, 410])
    @patch("pushcast.push.transport.webpush")
    def test_gone_is_permanent(self, mock_webpush, status_code):
        mock_webpush.side_effect = _push_error(status_code, "Gone")

        with pytest.raises(PermanentTransportError) as excinfo:
            _sender().send(ENDPOINT, KEYS, b"{}")

        assert excinfo.value.status_code == status_code
        assert excinfo.value.is_permanent

    @pytest.mark.parametrize("status_code", [400, 413, 429, 500, 503])
    @patch("pushcast.push.transport.webpush")
    def test_other_statuses_are_transient(self, mock_webpush, status_code):
        mock_webpush.side_effect = _push_error(status_code)

        with pytest.raises(TransientTransportError) as excinfo:
            _sender().send(ENDPOINT, KEYS, b"{}")

        assert excinfo.value.status_code == status_code
        assert not excinfo.value.is_permanent

    @patch("pushcast.push.transport.webpush")
    def test_network_error_is_transient(self, mock_webpush):
        mock_webpush.side_effect = requests.ConnectionError("connection reset")

        with pytest.raises(TransientTransportError) as excinfo:
            _sender().send(ENDPOINT, KEYS, b"{}")

        assert excinfo.value.status_code is None

    @patch("pushcast.push.transport.webpush")
    def test_bad_keys_are_transient(self, mock_webpush):
        mock_webpush.side_effect = ValueError("Invalid p256dh key")

        with pytest.raises(TransportError) as excinfo:
            _sender().send(ENDPOINT, KEYS, b"{}")

        assert not excinfo.value.is_permanent

    @patch("pushcast.push.transport.webpush")
    def test_endpoint_is_not_in_error_message(self, mock_webpush):
        mock_webpush.side_effect = _push_error(410, "Gone")

        with pytest.raises(TransportError) as excinfo:
            _sender().send(ENDPOINT, KEYS, b"{}")

        assert ENDPOINT not in str(excinfo.value)
        assert str(excinfo.value) == "Push service returned 410 Gone"
