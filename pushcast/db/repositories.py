from __future__ import annotations

from datetime import date, datetime
from typing import Generic, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pushcast.core.errors import StoreError
from pushcast.core.timeutil import utcnow
from pushcast.db import models

ModelT = TypeVar("ModelT")

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _in_pending_status(pending: dict[str, str]):
    """``(delivery_type = t AND status = s) OR ...`` for each ``t: s`` in *pending*."""
    conditions = [
        (models.Campaign.delivery_type == delivery_type) & (models.Campaign.status == status)
        for delivery_type, status in pending.items()
    ]
    clause = conditions[0]
    for extra in conditions[1:]:
        clause = clause | extra
    return clause


class BaseRepository(Generic[ModelT]):
    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id: UUID) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return self.db.execute(stmt).scalars().all()

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity


class SiteRepository(BaseRepository[models.Site]):
    model = models.Site


class SegmentRepository(BaseRepository[models.Segment]):
    model = models.Segment

    def add_member(self, segment_id: UUID, subscriber_id: UUID) -> models.SegmentMember:
        member = models.SegmentMember(segment_id=segment_id, subscriber_id=subscriber_id)
        self.db.add(member)
        self.db.flush()
        return member


class SubscriberRepository(BaseRepository[models.Subscriber]):
    model = models.Subscriber

    def list_active(self, site_id: UUID, segment_id: UUID | None = None) -> list[models.Subscriber]:
        """Return active subscribers of *site_id*, restricted to *segment_id* members when given."""
        stmt = select(models.Subscriber).where(
            models.Subscriber.site_id == site_id,
            models.Subscriber.is_active.is_(True),
        )
        if segment_id is not None:
            members = select(models.SegmentMember.subscriber_id).where(
                models.SegmentMember.segment_id == segment_id
            )
            stmt = stmt.where(models.Subscriber.id.in_(members))
        stmt = stmt.order_by(models.Subscriber.created_at.asc(), models.Subscriber.id.asc())
        try:
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load subscribers for site {site_id}") from exc

    def deactivate(self, subscriber_id: UUID) -> None:
        try:
            self.db.execute(
                update(models.Subscriber)
                .where(models.Subscriber.id == subscriber_id)
                .values(is_active=False, updated_at=utcnow())
            )
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not deactivate subscriber {subscriber_id}") from exc


class CampaignRepository(BaseRepository[models.Campaign]):
    model = models.Campaign

    def get_with_site(self, campaign_id: UUID) -> tuple[models.Campaign, models.Site] | None:
        """Return ``(campaign, site)`` or ``None`` when either is missing."""
        stmt = (
            select(models.Campaign, models.Site)
            .join(models.Site, models.Campaign.site_id == models.Site.id)
            .where(models.Campaign.id == campaign_id)
        )
        try:
            row = self.db.execute(stmt).one_or_none()
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load campaign {campaign_id}") from exc
        if row is None:
            return None
        return row[0], row[1]

    def list_due(
        self,
        now: datetime,
        pending: dict[str, str],
        limit: int,
    ) -> list[models.Campaign]:
        """Return campaigns in their pending status with ``scheduled_at <= now``.

        *pending* maps each polled delivery type to its pending status.
        Ordered by ``scheduled_at`` ascending and capped at *limit*.
        """
        stmt = (
            select(models.Campaign)
            .where(
                _in_pending_status(pending),
                models.Campaign.scheduled_at.is_not(None),
                models.Campaign.scheduled_at <= now,
            )
            .order_by(models.Campaign.scheduled_at.asc())
            .limit(limit)
        )
        try:
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as exc:
            raise StoreError("Could not list due campaigns") from exc

    def compare_and_set_status(
        self,
        campaign_id: UUID,
        expected: str,
        new: str,
        **values,
    ) -> bool:
        """Set ``status = new`` only where ``status = expected``.

        Returns ``True`` when exactly one row changed.  Extra column
        *values* (the next ``scheduled_at`` and rule on a recurring re-arm,
        or an explicit ``updated_at``) are written in the same statement.
        """
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(models.Campaign)
            .where(models.Campaign.id == campaign_id, models.Campaign.status == expected)
            .values(status=new, **values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not move campaign {campaign_id} from {expected!r} to {new!r}") from exc
        return result.rowcount == 1

    def release_stale(self, delivery_type: str, stuck: str, target: str, before: datetime) -> int:
        """Move *delivery_type* campaigns left in *stuck* since before *before* to *target*.

        Returns the number of campaigns moved.
        """
        stmt = (
            update(models.Campaign)
            .where(
                models.Campaign.delivery_type == delivery_type,
                models.Campaign.status == stuck,
                models.Campaign.updated_at < before,
            )
            .values(status=target, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            return self.db.execute(stmt).rowcount
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not release stale {stuck!r} campaigns") from exc

    def list_pending(
        self,
        pending: dict[str, str],
        site_id: UUID | None = None,
    ) -> list[tuple[models.Campaign, int]]:
        """Return armed campaigns with their delivery counts, soonest first.

        *pending* maps each polled delivery type to its pending status.
        Campaigns without a ``scheduled_at`` sort last.
        """
        delivery_count = (
            select(func.count(models.Delivery.id))
            .where(models.Delivery.campaign_id == models.Campaign.id)
            .correlate(models.Campaign)
            .scalar_subquery()
        )
        stmt = select(models.Campaign, delivery_count).where(_in_pending_status(pending))
        if site_id is not None:
            stmt = stmt.where(models.Campaign.site_id == site_id)
        stmt = stmt.order_by(models.Campaign.scheduled_at.is_(None), models.Campaign.scheduled_at.asc())
        try:
            return [(campaign, count) for campaign, count in self.db.execute(stmt).all()]
        except SQLAlchemyError as exc:
            raise StoreError("Could not list pending campaigns") from exc


class DeliveryRepository(BaseRepository[models.Delivery]):
    model = models.Delivery

    def create_queued(
        self,
        campaign_id: UUID,
        subscriber_id: UUID,
        created_at: datetime | None = None,
    ) -> models.Delivery:
        try:
            return self.create(
                campaign_id=campaign_id,
                subscriber_id=subscriber_id,
                status="queued",
                created_at=created_at or utcnow(),
            )
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not queue delivery for campaign {campaign_id}") from exc

    def set_outcome(
        self,
        delivery_id: UUID,
        status: str,
        *,
        expected: tuple[str, ...] | None = None,
        sent_at: datetime | None = None,
        clicked_at: datetime | None = None,
        closed_at: datetime | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Update one delivery row; with *expected*, only while its status is one of them.

        Returns ``True`` when the row changed.
        """
        values: dict = {"status": status}
        for column, value in (
            ("sent_at", sent_at),
            ("clicked_at", clicked_at),
            ("closed_at", closed_at),
            ("error_message", error_message),
        ):
            if value is not None:
                values[column] = value
        stmt = update(models.Delivery).where(models.Delivery.id == delivery_id)
        if expected is not None:
            stmt = stmt.where(models.Delivery.status.in_(expected))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not record outcome for delivery {delivery_id}") from exc
        return result.rowcount == 1

    def latest_for(self, campaign_id: UUID, subscriber_id: UUID) -> models.Delivery | None:
        """Return the current delivery of the (campaign, subscriber) pair: the newest row."""
        stmt = (
            select(models.Delivery)
            .where(
                models.Delivery.campaign_id == campaign_id,
                models.Delivery.subscriber_id == subscriber_id,
            )
            .order_by(models.Delivery.created_at.desc())
            .limit(1)
        )
        try:
            return self.db.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load delivery for campaign {campaign_id}") from exc

    def list_attempted_between(
        self,
        campaign_id: UUID,
        start: datetime,
        end: datetime,
    ) -> list[models.Delivery]:
        """Return deliveries of *campaign_id* attempted in ``[start, end)``.

        The attempt time is ``sent_at``, falling back to ``created_at`` for
        rows that never reached the push service.
        """
        attempted_at = models.Delivery.sent_at.is_not(None)
        stmt = select(models.Delivery).where(
            models.Delivery.campaign_id == campaign_id,
            (
                attempted_at
                & (models.Delivery.sent_at >= start)
                & (models.Delivery.sent_at < end)
            )
            | (
                ~attempted_at
                & (models.Delivery.created_at >= start)
                & (models.Delivery.created_at < end)
            ),
        )
        try:
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not load deliveries for campaign {campaign_id}") from exc


class CampaignStatsRepository(BaseRepository[models.CampaignDailyStats]):
    model = models.CampaignDailyStats

    def get_for_day(self, campaign_id: UUID, day: date) -> models.CampaignDailyStats | None:
        stmt = select(models.CampaignDailyStats).where(
            models.CampaignDailyStats.campaign_id == campaign_id,
            models.CampaignDailyStats.stat_date == day,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def upsert(self, campaign_id: UUID, day: date, **counters) -> None:
        """Insert or overwrite the (campaign, day) row with *counters*."""
        dialect = self.db.get_bind().dialect.name
        try:
            if dialect in _UPSERT_DIALECTS:
                stmt = _UPSERT_DIALECTS[dialect](models.CampaignDailyStats).values(
                    id=uuid4(), campaign_id=campaign_id, stat_date=day, updated_at=utcnow(), **counters
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["campaign_id", "stat_date"],
                    set_={**counters, "updated_at": utcnow()},
                )
                self.db.execute(stmt)
                return

            row = self.get_for_day(campaign_id, day)
            if row is None:
                self.create(campaign_id=campaign_id, stat_date=day, **counters)
            else:
                self.update(row, **counters)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not upsert stats for campaign {campaign_id}") from exc
