"""Delivery executor: fan one claimed campaign out to its subscribers.

Subscribers are sent to in fixed-size batches.  Sends inside a batch run
concurrently on a thread pool no wider than the batch; the next batch only
starts once every send of the current one has resolved, so the batch size
caps in-flight pushes for the whole process.

Every delivery row is committed as ``queued`` before its push is attempted
and committed again with its outcome, so a crash mid-dispatch leaves
auditable ``queued`` rows instead of silently losing attempts.

The campaign must already be claimed (status ``sending``).  One-shot
campaigns are completed here; recurring campaigns are handed back to the
scheduler, which owns their re-arm.

Safety: endpoints and subscription keys are never logged, only ids.
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pushcast.campaigns.states import CampaignStatus, DeliveryStatus, is_one_shot, require_transition
from pushcast.core.errors import InvalidTransitionError, NotFoundError, StoreError, TransportError
from pushcast.core.security import SecurityService
from pushcast.core.timeutil import utcnow
from pushcast.db.models import Site
from pushcast.db.repositories import CampaignRepository, DeliveryRepository, SubscriberRepository
from pushcast.dispatch.payload import build_payload_template, render_payload
from pushcast.push.transport import PushSender, PushTransport, SubscriptionKeys
from pushcast.stats.aggregator import StatsAggregator

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50

# A click callback can land before the send outcome is written.
_UNRESOLVED = (DeliveryStatus.QUEUED.value,)


# ---------------------------------------------------------------------------
# DispatchResult
# ---------------------------------------------------------------------------

@dataclass
class DispatchResult:
    """Outcome counts for one campaign dispatch."""

    campaign_id: UUID
    success_count: int = 0
    failure_count: int = 0
    deactivated_count: int = 0

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    def as_dict(self) -> dict:
        return {
            "campaign_id": str(self.campaign_id),
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "deactivated_count": self.deactivated_count,
            "total": self.total,
        }


@dataclass(frozen=True)
class _Target:
    subscriber_id: UUID
    endpoint: str
    keys: SubscriptionKeys


# ---------------------------------------------------------------------------
# DeliveryExecutor
# ---------------------------------------------------------------------------

class DeliveryExecutor:
    """Send one campaign to every targeted subscriber and record outcomes."""

    def __init__(
        self,
        db_session: Session,
        transport: PushTransport,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        security: SecurityService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.db = db_session
        self.transport = transport
        self.batch_size = batch_size
        self.security = security or SecurityService()
        self.clock = clock
        self.campaigns = CampaignRepository(db_session)
        self.subscribers = SubscriberRepository(db_session)
        self.deliveries = DeliveryRepository(db_session)

    # -- public API ---------------------------------------------------------

    def dispatch(self, campaign_id: UUID) -> DispatchResult:
        """Fan the claimed campaign out and return its outcome counts.

        Raises ``NotFoundError`` when the campaign or its active site is
        missing and ``ConfigurationError`` when the site's VAPID key pair is
        unusable.  Per-subscriber failures are recorded, never raised.
        """
        started = self.clock()
        loaded = self.campaigns.get_with_site(campaign_id)
        if loaded is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        campaign, site = loaded
        if not site.is_active:
            raise NotFoundError(f"Site {site.id} for campaign {campaign_id} not found")
        if campaign.status != CampaignStatus.SENDING.value:
            raise InvalidTransitionError(
                f"Campaign {campaign_id} must be claimed before dispatch (status {campaign.status!r})"
            )

        delivery_type = campaign.delivery_type
        sender = self._sender_for(site)
        template = build_payload_template(campaign)
        targets = [
            _Target(s.id, s.endpoint, SubscriptionKeys(p256dh=s.p256dh_key, auth=s.auth_key))
            for s in self.subscribers.list_active(site.id, campaign.segment_id)
        ]

        result = DispatchResult(campaign_id=campaign.id)
        logger.info("Dispatching campaign %s to %d subscribers", campaign_id, len(targets))

        if targets:
            workers = min(self.batch_size, len(targets))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="push-send") as pool:
                for start in range(0, len(targets), self.batch_size):
                    batch = targets[start:start + self.batch_size]
                    self._send_batch(pool, sender, campaign_id, template, batch, result)
                    logger.info(
                        "Campaign %s progress: %d/%d",
                        campaign_id, min(start + self.batch_size, len(targets)), len(targets),
                    )

        if is_one_shot(delivery_type):
            self._complete(campaign_id, delivery_type)

        self._refresh_stats(campaign_id, started)
        logger.info(
            "Campaign %s dispatched: %d sent, %d failed, %d subscribers deactivated",
            campaign_id, result.success_count, result.failure_count, result.deactivated_count,
        )
        return result

    # -- batch --------------------------------------------------------------

    def _send_batch(
        self,
        pool: ThreadPoolExecutor,
        sender: PushSender,
        campaign_id: UUID,
        template: dict,
        batch: list[_Target],
        result: DispatchResult,
    ) -> None:
        futures: dict[Future, tuple[_Target, UUID]] = {}
        for target in batch:
            delivery_id = self._queue(campaign_id, target)
            if delivery_id is None:
                result.failure_count += 1
                continue
            payload = render_payload(template, delivery_id)
            future = pool.submit(sender.send, target.endpoint, target.keys, payload)
            futures[future] = (target, delivery_id)

        for future in as_completed(futures):
            target, delivery_id = futures[future]
            try:
                future.result()
            except TransportError as exc:
                self._record_failure(target, delivery_id, exc, result)
            except Exception as exc:
                logger.exception("Unexpected push error for subscriber %s", target.subscriber_id)
                self._record_failure(target, delivery_id, TransportError(str(exc)), result)
            else:
                self._record_success(delivery_id, result)

    def _queue(self, campaign_id: UUID, target: _Target) -> UUID | None:
        try:
            delivery = self.deliveries.create_queued(campaign_id, target.subscriber_id, created_at=self.clock())
            delivery_id = delivery.id
            self.db.commit()
        except (StoreError, SQLAlchemyError):
            self.db.rollback()
            logger.exception("Could not queue delivery for subscriber %s", target.subscriber_id)
            return None
        return delivery_id

    def _record_success(self, delivery_id: UUID, result: DispatchResult) -> None:
        result.success_count += 1
        try:
            self.deliveries.set_outcome(
                delivery_id, DeliveryStatus.SENT.value, expected=_UNRESOLVED, sent_at=self.clock()
            )
            self.db.commit()
        except (StoreError, SQLAlchemyError):
            self.db.rollback()
            logger.exception("Delivery %s sent but its status could not be saved", delivery_id)

    def _record_failure(
        self,
        target: _Target,
        delivery_id: UUID,
        exc: TransportError,
        result: DispatchResult,
    ) -> None:
        result.failure_count += 1
        logger.warning(
            "Push failed for subscriber %s (status=%s): %s",
            target.subscriber_id, exc.status_code, exc,
        )
        try:
            self.deliveries.set_outcome(
                delivery_id, DeliveryStatus.FAILED.value, expected=_UNRESOLVED, error_message=str(exc)
            )
            if exc.is_permanent:
                self.subscribers.deactivate(target.subscriber_id)
            self.db.commit()
        except (StoreError, SQLAlchemyError):
            self.db.rollback()
            logger.exception("Failure of delivery %s could not be saved", delivery_id)
            return
        if exc.is_permanent:
            result.deactivated_count += 1
            logger.info("Subscriber %s deactivated: endpoint gone", target.subscriber_id)

    # -- helpers ------------------------------------------------------------

    def _sender_for(self, site: Site) -> PushSender:
        private_key = self.security.open_private_key(site.vapid_private_key) if site.vapid_private_key else None
        return self.transport.configure(site.vapid_public_key, private_key)

    def _complete(self, campaign_id: UUID, delivery_type: str) -> None:
        current, target = CampaignStatus.SENDING.value, CampaignStatus.COMPLETED.value
        require_transition(delivery_type, current, target)
        if self.campaigns.compare_and_set_status(campaign_id, current, target):
            self.db.commit()
        else:
            self.db.rollback()
            logger.warning("Campaign %s left %r during dispatch; not marked completed", campaign_id, current)

    def _refresh_stats(self, campaign_id: UUID, started: datetime) -> None:
        """Refresh every UTC day the dispatch touched, from *started* until now."""
        aggregator = StatsAggregator(self.db, clock=self.clock)
        first = started.astimezone(timezone.utc).date()
        last = self.clock().astimezone(timezone.utc).date()
        days = [first + timedelta(days=offset) for offset in range((last - first).days + 1)]
        try:
            for day in days:
                aggregator.refresh(campaign_id, day)
        except (StoreError, SQLAlchemyError):
            self.db.rollback()
            logger.exception("Stats refresh failed for campaign %s", campaign_id)
