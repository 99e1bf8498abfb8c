"""Click and close callbacks from the service worker.

The payload of every push carries its ``deliveryId``; the service worker
posts it back when the notification is clicked or dismissed.  Older
workers only know the campaign and subscriber, so the pair lookup resolves
to the pair's current (newest) delivery row.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from pushcast.campaigns.states import DeliveryStatus
from pushcast.core.errors import InvalidTransitionError, NotFoundError
from pushcast.core.timeutil import ensure_utc, utcnow
from pushcast.db import models
from pushcast.db.repositories import DeliveryRepository
from pushcast.stats.aggregator import StatsAggregator

logger = logging.getLogger(__name__)

# Queued counts as clickable: the browser can report a click before the
# executor has written the send outcome.
_CLICKABLE = (DeliveryStatus.QUEUED.value, DeliveryStatus.SENT.value)


class DeliveryTracker:
    def __init__(self, db_session: Session, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db_session
        self.clock = clock
        self.deliveries = DeliveryRepository(db_session)

    def record_click(self, delivery_id: UUID) -> models.Delivery:
        """Mark a delivery clicked and refresh its campaign's stats.

        Clicking an already clicked delivery is a no-op.
        """
        delivery = self._get(delivery_id)
        if delivery.status == DeliveryStatus.CLICKED.value:
            return delivery
        if delivery.status not in _CLICKABLE:
            raise InvalidTransitionError(f"Delivery {delivery_id} is {delivery.status!r} and cannot be clicked")

        now = self.clock()
        self.deliveries.set_outcome(
            delivery_id,
            DeliveryStatus.CLICKED.value,
            expected=_CLICKABLE,
            sent_at=None if delivery.sent_at else now,
            clicked_at=now,
        )
        self.db.commit()
        self.db.refresh(delivery)
        logger.info("Delivery %s clicked", delivery_id)
        self._refresh_stats(delivery)
        return delivery

    def record_click_for(self, campaign_id: UUID, subscriber_id: UUID) -> models.Delivery:
        delivery = self.deliveries.latest_for(campaign_id, subscriber_id)
        if delivery is None:
            raise NotFoundError(f"No delivery of campaign {campaign_id} to subscriber {subscriber_id}")
        return self.record_click(delivery.id)

    def record_close(self, delivery_id: UUID) -> models.Delivery:
        """Stamp ``closed_at``; the delivery status is left as it is."""
        delivery = self._get(delivery_id)
        if delivery.closed_at is None:
            self.deliveries.update(delivery, closed_at=self.clock())
            self.db.commit()
            logger.info("Delivery %s closed", delivery_id)
        return delivery

    def _get(self, delivery_id: UUID) -> models.Delivery:
        delivery = self.deliveries.get(delivery_id)
        if delivery is None:
            raise NotFoundError(f"Delivery {delivery_id} not found")
        return delivery

    def _refresh_stats(self, delivery: models.Delivery) -> None:
        attempted_at = ensure_utc(delivery.sent_at or delivery.created_at)
        StatsAggregator(self.db, clock=self.clock).refresh(delivery.campaign_id, attempted_at.date())
