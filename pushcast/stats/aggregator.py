"""Daily per-campaign delivery counters.

Deliveries are the source of truth; ``campaign_stats`` rows are derived and
overwritten on every refresh, so calling ``refresh`` repeatedly never
double-counts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from pushcast.campaigns.states import DeliveryStatus
from pushcast.core.timeutil import utcnow
from pushcast.db.repositories import CampaignStatsRepository, DeliveryRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DailyCounters:
    sent_count: int
    failed_count: int
    clicked_count: int
    unique_clicks: int
    ctr: float


def click_through_rate(clicked: int, sent: int) -> float:
    if sent <= 0:
        return 0.0
    return round(clicked / sent * 100, 2)


class StatsAggregator:
    """Roll delivery outcomes up into ``campaign_stats``."""

    def __init__(self, db_session: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db_session
        self.clock = clock
        self.deliveries = DeliveryRepository(db_session)
        self.stats = CampaignStatsRepository(db_session)

    def compute(self, campaign_id: UUID, day: date) -> DailyCounters:
        """Count the campaign's deliveries attempted on *day* (UTC)."""
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        rows = self.deliveries.list_attempted_between(campaign_id, start, start + timedelta(days=1))

        sent = failed = clicked = 0
        clickers: set[UUID] = set()
        for row in rows:
            if row.status == DeliveryStatus.SENT.value:
                sent += 1
            elif row.status == DeliveryStatus.CLICKED.value:
                # A clicked notification was delivered first.
                sent += 1
                clicked += 1
                clickers.add(row.subscriber_id)
            elif row.status == DeliveryStatus.FAILED.value:
                failed += 1

        return DailyCounters(
            sent_count=sent,
            failed_count=failed,
            clicked_count=clicked,
            unique_clicks=len(clickers),
            ctr=click_through_rate(clicked, sent),
        )

    def refresh(self, campaign_id: UUID, day: date | None = None) -> DailyCounters:
        """Recompute and upsert the (campaign, *day*) row; *day* defaults to today (UTC)."""
        day = day or self.clock().astimezone(timezone.utc).date()
        counters = self.compute(campaign_id, day)
        self.stats.upsert(
            campaign_id,
            day,
            sent_count=counters.sent_count,
            failed_count=counters.failed_count,
            clicked_count=counters.clicked_count,
            unique_clicks=counters.unique_clicks,
            ctr=counters.ctr,
        )
        self.db.commit()
        logger.info(
            "Stats refreshed for campaign %s on %s: sent=%d failed=%d clicked=%d",
            campaign_id, day, counters.sent_count, counters.failed_count, counters.clicked_count,
        )
        return counters
