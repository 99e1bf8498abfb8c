"""Tests for the delivery executor.

Covers:
- fan-out to every active subscriber, one delivery row each
- 410 endpoints: delivery failed, subscriber deactivated, batch continues
- segment targeting and inactive subscribers
- batch size bounds concurrent sends
- per-delivery payload carrying its deliveryId
- completion of one-shot campaigns; recurring ones stay in sending
- daily stats for every day a dispatch spans
- missing campaign/site and unusable credentials
"""
from __future__ import annotations

import json
from datetime import date, timedelta
from uuid import uuid4

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import select

from pushcast.core.errors import ConfigurationError, InvalidTransitionError, NotFoundError
from pushcast.core.security import SecurityService
from pushcast.db.models import Campaign, CampaignDailyStats, Delivery, Subscriber
from pushcast.dispatch.executor import DeliveryExecutor
from tests.factories import FixedClock, make_campaign, make_segment, make_site, make_subscribers, utc


class _TickingClock(FixedClock):
    """Moves one minute forward on every read."""

    def __call__(self):
        current = self.now
        self.now += timedelta(minutes=1)
        return current


def _executor(db_session, transport, clock, **kwargs) -> DeliveryExecutor:
    return DeliveryExecutor(db_session, transport, clock=clock, **kwargs)


def _deliveries(db_session, campaign_id) -> list[Delivery]:
    return list(db_session.execute(select(Delivery).where(Delivery.campaign_id == campaign_id)).scalars())


# ---------------------------------------------------------------------------
# Fan-out and outcomes
# ---------------------------------------------------------------------------

class TestFanOut:
    def test_sends_to_every_active_subscriber(self, db_session, transport, clock):
        site = make_site(db_session)
        make_subscribers(db_session, site, 5)
        campaign = make_campaign(db_session, site, status="sending")

        result = _executor(db_session, transport, clock).dispatch(campaign.id)

        assert result.success_count == 5
        assert result.failure_count == 0
        assert len(transport.sent) == 5
        rows = _deliveries(db_session, campaign.id)
        assert len(rows) == 5
        assert {row.status for row in rows} == {"sent"}
        assert all(row.sent_at is not None for row in rows)

    def test_gone_endpoints_are_deactivated_and_batch_continues(self, db_session, transport, clock):
        site = make_site(db_session)
        subscribers = make_subscribers(db_session, site, 10, gone=3)
        gone_ids = {s.id for s in subscribers[-3:]}
        campaign = make_campaign(db_session, site, status="sending")

        result = _executor(db_session, transport, clock, batch_size=4).dispatch(campaign.id)

        assert result.success_count == 7
        assert result.failure_count == 3
        assert result.deactivated_count == 3
        rows = _deliveries(db_session, campaign.id)
        assert len(rows) == 10
        failed = [row for row in rows if row.status == "failed"]
        assert {row.subscriber_id for row in failed} == gone_ids
        assert all("410" in row.error_message for row in failed)

        db_session.expire_all()
        inactive = db_session.execute(select(Subscriber.id).where(Subscriber.is_active.is_(False))).scalars()
        assert set(inactive) == gone_ids

    def test_transient_failure_keeps_subscriber_active(self, db_session, transport, clock):
        site = make_site(db_session)
        subscribers = make_subscribers(db_session, site, 2)
        transport.failures[subscribers[0].endpoint] = 500
        campaign = make_campaign(db_session, site, status="sending")

        result = _executor(db_session, transport, clock).dispatch(campaign.id)

        assert result.failure_count == 1
        assert result.deactivated_count == 0
        db_session.expire_all()
        assert db_session.get(Subscriber, subscribers[0].id).is_active is True

    def test_inactive_subscribers_are_skipped(self, db_session, transport, clock):
        site = make_site(db_session)
        subscribers = make_subscribers(db_session, site, 3)
        subscribers[1].is_active = False
        db_session.commit()
        campaign = make_campaign(db_session, site, status="sending")

        result = _executor(db_session, transport, clock).dispatch(campaign.id)

        assert result.total == 2
        assert subscribers[1].endpoint not in {push.endpoint for push in transport.sent}

    def test_segment_limits_recipients(self, db_session, transport, clock):
        site = make_site(db_session)
        subscribers = make_subscribers(db_session, site, 6)
        segment = make_segment(db_session, site, subscribers[:2])
        campaign = make_campaign(db_session, site, status="sending", segment_id=segment.id)

        result = _executor(db_session, transport, clock).dispatch(campaign.id)

        assert result.success_count == 2
        assert {push.endpoint for push in transport.sent} == {s.endpoint for s in subscribers[:2]}

    def test_no_subscribers_still_completes(self, db_session, transport, clock):
        site = make_site(db_session)
        campaign = make_campaign(db_session, site, status="sending")

        result = _executor(db_session, transport, clock).dispatch(campaign.id)

        assert result.total == 0
        db_session.expire_all()
        assert db_session.get(Campaign, campaign.id).status == "completed"


# ---------------------------------------------------------------------------
# Batching and payload
# ---------------------------------------------------------------------------

class TestBatching:
    def test_batch_size_bounds_concurrent_sends(self, db_session, transport, clock):
        transport.delay = 0.02
        site = make_site(db_session)
        make_subscribers(db_session, site, 9)
        campaign = make_campaign(db_session, site, status="sending")

        result = _executor(db_session, transport, clock, batch_size=3).dispatch(campaign.id)

        assert result.success_count == 9
        assert 1 <= transport.max_in_flight <= 3

    def test_batch_size_must_be_positive(self, db_session, transport, clock):
        with pytest.raises(ValueError):
            _executor(db_session, transport, clock, batch_size=0)

    def test_payload_carries_campaign_and_delivery_ids(self, db_session, transport, clock):
        site = make_site(db_session)
        make_subscribers(db_session, site, 3)
        campaign = make_campaign(db_session, site, status="sending")

        _executor(db_session, transport, clock).dispatch(campaign.id)

        payloads = [json.loads(push.payload) for push in transport.sent]
        delivery_ids = {str(row.id) for row in _deliveries(db_session, campaign.id)}
        assert {p["deliveryId"] for p in payloads} == delivery_ids
        assert {p["campaignId"] for p in payloads} == {str(campaign.id)}
        assert payloads[0]["title"] == "Spring sale"
        assert payloads[0]["icon"] == "https://example.com/icon.png"
        assert payloads[0]["image"] is None


# ---------------------------------------------------------------------------
# Campaign status and stats
# ---------------------------------------------------------------------------

class TestCompletion:
    def test_one_shot_is_completed(self, db_session, transport, clock):
        site = make_site(db_session)
        make_subscribers(db_session, site, 1)
        campaign = make_campaign(db_session, site, delivery_type="scheduled", status="sending")

        _executor(db_session, transport, clock).dispatch(campaign.id)

        db_session.expire_all()
        assert db_session.get(Campaign, campaign.id).status == "completed"

    def test_recurring_is_left_for_the_scheduler(self, db_session, transport, clock):
        site = make_site(db_session)
        make_subscribers(db_session, site, 1)
        campaign = make_campaign(
            db_session, site, delivery_type="recurring", status="sending", recurring_schedule={"frequency": "daily"}
        )

        _executor(db_session, transport, clock).dispatch(campaign.id)

        db_session.expire_all()
        assert db_session.get(Campaign, campaign.id).status == "sending"

    def test_stats_refreshed_after_dispatch(self, db_session, transport, clock):
        site = make_site(db_session)
        make_subscribers(db_session, site, 4, gone=1)
        campaign = make_campaign(db_session, site, status="sending")

        _executor(db_session, transport, clock).dispatch(campaign.id)

        row = db_session.execute(
            select(CampaignDailyStats).where(CampaignDailyStats.campaign_id == campaign.id)
        ).scalar_one()
        assert row.stat_date == clock().date()
        assert (row.sent_count, row.failed_count) == (3, 1)

    def test_stats_cover_every_day_a_dispatch_spans(self, db_session, transport):
        clock = _TickingClock(utc(2026, 3, 2, 23, 55))
        site = make_site(db_session)
        make_subscribers(db_session, site, 4)
        campaign = make_campaign(db_session, site, status="sending")

        _executor(db_session, transport, clock, batch_size=1).dispatch(campaign.id)

        rows = db_session.execute(
            select(CampaignDailyStats)
            .where(CampaignDailyStats.campaign_id == campaign.id)
            .order_by(CampaignDailyStats.stat_date)
        ).scalars().all()
        assert [row.stat_date for row in rows] == [date(2026, 3, 2), date(2026, 3, 3)]
        assert all(row.sent_count > 0 for row in rows)
        assert sum(row.sent_count for row in rows) == 4

    def test_unclaimed_campaign_is_rejected(self, db_session, transport, clock):
        site = make_site(db_session)
        make_subscribers(db_session, site, 1)
        campaign = make_campaign(db_session, site, status="draft")

        with pytest.raises(InvalidTransitionError):
            _executor(db_session, transport, clock).dispatch(campaign.id)
        assert transport.sent == []


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestErrors:
    def test_unknown_campaign(self, db_session, transport, clock):
        with pytest.raises(NotFoundError):
            _executor(db_session, transport, clock).dispatch(uuid4())

    def test_inactive_site(self, db_session, transport, clock):
        site = make_site(db_session)
        site.is_active = False
        db_session.commit()
        campaign = make_campaign(db_session, site, status="sending")

        with pytest.raises(NotFoundError):
            _executor(db_session, transport, clock).dispatch(campaign.id)

    def test_missing_credentials(self, db_session, transport, clock):
        site = make_site(db_session, private_key=None)
        make_subscribers(db_session, site, 2)
        campaign = make_campaign(db_session, site, status="sending")

        with pytest.raises(ConfigurationError):
            _executor(db_session, transport, clock).dispatch(campaign.id)
        assert _deliveries(db_session, campaign.id) == []

    def test_private_key_is_decrypted_per_site(self, db_session, transport, clock):
        security = SecurityService.from_key(Fernet.generate_key().decode("utf-8"))
        site = make_site(db_session, private_key=security.seal_private_key("site-a-private"))
        make_subscribers(db_session, site, 1)
        campaign = make_campaign(db_session, site, status="sending")

        _executor(db_session, transport, clock, security=security).dispatch(campaign.id)

        assert transport.configured == [("BPublicKey", "site-a-private")]
        assert transport.sent[0].private_key == "site-a-private"

    def test_key_sealed_with_another_key_is_a_configuration_error(self, db_session, transport, clock):
        sealed = SecurityService.from_key(Fernet.generate_key().decode("utf-8")).seal_private_key("secret")
        other = SecurityService.from_key(Fernet.generate_key().decode("utf-8"))
        site = make_site(db_session, private_key=sealed)
        campaign = make_campaign(db_session, site, status="sending")

        with pytest.raises(ConfigurationError):
            _executor(db_session, transport, clock, security=other).dispatch(campaign.id)
