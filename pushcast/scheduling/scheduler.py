"""Campaign scheduler: poll loop, one-shot timers, claim and re-arm.

The store is the source of truth for what is armed: a campaign is due when
it sits in the pending status for its delivery type with ``scheduled_at``
in the past.  Picking one up starts with an atomic conditional update out
of that status (the claim); a poller whose claim touches zero rows skips the
campaign, so any number of scheduler processes may poll the same store.

In-process timers (APScheduler date jobs, one per ``schedule_at`` call) only
fire one-shot campaigns closer to their exact time than the poll interval
allows.  They go through the same claim, so a timer and a poll racing for a
campaign still dispatch it once.

Recurring campaigns re-arm after each fire from the scheduled time that
fired rather than from the wall clock, so a late poll does not shift later
occurrences.  The next fire time and the return to ``active`` are one
conditional update.  If that write fails the campaign returns to ``active``
with its old ``scheduled_at`` and is due again on the next poll; a claim
that cannot be released at all is returned to ``active`` by the poll once
it is older than ``STALE_CLAIM_SECONDS``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable
from uuid import UUID
from zoneinfo import ZoneInfo

from apscheduler.executors.pool import ThreadPoolExecutor as JobPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pushcast.campaigns.states import (
    POLLED_TYPES,
    CampaignStatus,
    DeliveryType,
    can_transition,
    is_one_shot,
    pending_status,
    require_transition,
)
from pushcast.core.errors import InvalidTransitionError, NotFoundError, StoreError
from pushcast.core.security import SecurityService
from pushcast.core.settings import Settings, get_settings
from pushcast.core.timeutil import ensure_utc, utcnow
from pushcast.db.repositories import CampaignRepository
from pushcast.db.session import get_session_factory
from pushcast.dispatch.executor import DeliveryExecutor, DispatchResult
from pushcast.push.transport import PushTransport, WebPushTransport
from pushcast.scheduling.recurrence import RecurrenceRule, next_fire_time

logger = logging.getLogger(__name__)

POLL_JOB_ID = "poll-due-campaigns"
_TIMER_PREFIX = "campaign:"
_RELEASE_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DueCampaign:
    """Snapshot of a campaign taken when it was found due."""

    campaign_id: UUID
    delivery_type: str
    scheduled_at: datetime | None
    recurring_schedule: dict[str, Any] | None = None


@dataclass
class PollSummary:
    found: int = 0
    released: int = 0
    dispatched: list[UUID] = field(default_factory=list)
    skipped: list[UUID] = field(default_factory=list)
    failed: list[UUID] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "found": self.found,
            "released": self.released,
            "dispatched": [str(cid) for cid in self.dispatched],
            "skipped": [str(cid) for cid in self.skipped],
            "failed": [str(cid) for cid in self.failed],
        }


def _load_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def _timer_id(campaign_id: UUID) -> str:
    return f"{_TIMER_PREFIX}{campaign_id}"


def _polled_pending() -> dict[str, str]:
    return {t.value: pending_status(t).value for t in POLLED_TYPES}


def _isoformat(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# CampaignScheduler
# ---------------------------------------------------------------------------

class CampaignScheduler:
    """Decide when campaigns fire and hand them to the ``DeliveryExecutor``.

    Parameters
    ----------
    session_factory:
        Produces one short-lived SQLAlchemy session per unit of work.
    transport:
        Push transport handed to every ``DeliveryExecutor``.
    settings:
        Batch size, poll interval and limit, worker count, schedule
        timezone and encryption key.  Defaults to ``get_settings()``.
    clock:
        Returns the current aware UTC time.
    scheduler:
        APScheduler instance owning the poll job and one-shot timers.  A
        ``BackgroundScheduler`` with ``settings.scheduler_workers`` workers
        is created when omitted.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        transport: PushTransport,
        *,
        settings: Settings | None = None,
        security: SecurityService | None = None,
        clock: Callable[[], datetime] = utcnow,
        scheduler: BaseScheduler | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.session_factory = session_factory
        self.transport = transport
        self.batch_size = settings.dispatch_batch_size
        self.poll_interval_seconds = settings.poll_interval_seconds
        self.poll_batch_limit = settings.poll_batch_limit
        self.stale_claim_seconds = settings.stale_claim_seconds
        self.timezone = _load_timezone(settings.schedule_timezone)
        self.security = security or SecurityService.from_key(settings.fernet_key)
        self.clock = clock
        self._scheduler = scheduler or BackgroundScheduler(
            executors={"default": JobPoolExecutor(settings.scheduler_workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone=timezone.utc,
        )

    # -- lifecycle ----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Start the poll loop; the first poll runs immediately."""
        if self.running:
            logger.info("Scheduler is already running")
            return
        self._scheduler.add_job(
            self.poll_and_dispatch_due,
            trigger="interval",
            seconds=self.poll_interval_seconds,
            id=POLL_JOB_ID,
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._scheduler.start()
        logger.info("Scheduler started (poll every %ds)", self.poll_interval_seconds)

    def stop(self, wait: bool = True) -> None:
        """Stop polling and timers; with *wait* an in-flight dispatch finishes first."""
        if not self.running:
            return
        self._scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def status(self) -> dict:
        """Report the poll loop and the one-shot timers armed in this process."""
        pending_ids = self._armed_ids()
        return {
            "running": self.running,
            "pending_count": len(pending_ids),
            "pending_ids": pending_ids,
        }

    def list_pending(self, site_id: UUID | None = None) -> list[dict]:
        """Armed campaigns as the store has them, across every scheduler process.

        Covers scheduled campaigns waiting in ``scheduled`` and recurring
        ones in ``active``, soonest ``scheduled_at`` first.
        """
        armed = set(self._armed_ids())
        with self.session_factory() as db:
            rows = CampaignRepository(db).list_pending(_polled_pending(), site_id)
            return [
                {
                    "campaign_id": str(campaign.id),
                    "site_id": str(campaign.site_id),
                    "name": campaign.name,
                    "title": campaign.title,
                    "delivery_type": campaign.delivery_type,
                    "status": campaign.status,
                    "scheduled_at": _isoformat(campaign.scheduled_at),
                    "recurring_schedule": campaign.recurring_schedule,
                    "delivery_count": delivery_count,
                    "timer_armed": str(campaign.id) in armed,
                }
                for campaign, delivery_count in rows
            ]

    # -- polling ------------------------------------------------------------

    def find_due(self) -> list[DueCampaign]:
        """Return campaigns due now, oldest ``scheduled_at`` first, capped per poll."""
        with self.session_factory() as db:
            rows = CampaignRepository(db).list_due(self.clock(), _polled_pending(), self.poll_batch_limit)
            return [
                DueCampaign(
                    campaign_id=row.id,
                    delivery_type=row.delivery_type,
                    scheduled_at=ensure_utc(row.scheduled_at),
                    recurring_schedule=dict(row.recurring_schedule) if row.recurring_schedule else None,
                )
                for row in rows
            ]

    def process_due(self, due: list[DueCampaign]) -> PollSummary:
        """Dispatch each due campaign in turn; one failure never stops the rest."""
        summary = PollSummary(found=len(due))
        for item in due:
            try:
                outcome = self._process(item)
            except Exception:
                logger.exception("Unhandled error processing campaign %s", item.campaign_id)
                summary.failed.append(item.campaign_id)
                continue
            if outcome is None:
                summary.skipped.append(item.campaign_id)
            elif outcome is False:
                summary.failed.append(item.campaign_id)
            else:
                summary.dispatched.append(item.campaign_id)
        return summary

    def poll_and_dispatch_due(self) -> PollSummary:
        """One poll tick: release stale claims, then dispatch due campaigns sequentially."""
        released = self.release_stale_claims()
        try:
            due = self.find_due()
        except (StoreError, SQLAlchemyError):
            logger.exception("Could not query due campaigns; will retry next poll")
            return PollSummary(released=released)
        if due:
            logger.info("Found %d campaigns due for dispatch", len(due))
        summary = self.process_due(due)
        summary.released = released
        if due:
            logger.info(
                "Poll finished: %d dispatched, %d skipped, %d failed",
                len(summary.dispatched), len(summary.skipped), len(summary.failed),
            )
        return summary

    def release_stale_claims(self) -> int:
        """Return recurring campaigns stuck in ``sending`` to ``active``.

        A claim older than ``stale_claim_seconds`` belongs to a dispatch that
        died or could not write its outcome; the campaign is due again at
        its stored ``scheduled_at``.
        """
        sending, active = CampaignStatus.SENDING.value, CampaignStatus.ACTIVE.value
        require_transition(DeliveryType.RECURRING.value, sending, active)
        cutoff = self.clock() - timedelta(seconds=self.stale_claim_seconds)
        try:
            with self.session_factory() as db:
                released = CampaignRepository(db).release_stale(
                    DeliveryType.RECURRING.value, sending, active, cutoff
                )
                db.commit()
        except (StoreError, SQLAlchemyError):
            logger.exception("Could not release stale claims; will retry next poll")
            return 0
        if released:
            logger.warning(
                "Returned %d recurring campaigns claimed before %s to %r", released, cutoff.isoformat(), active
            )
        return released

    # -- direct operations --------------------------------------------------

    def dispatch(self, campaign_id: UUID) -> DispatchResult:
        """Send a campaign now, claiming it from its pending status.

        Raises ``NotFoundError``, ``ConfigurationError`` or
        ``InvalidTransitionError`` to the caller.  A recurring campaign sent
        by hand keeps its next ``scheduled_at`` whether or not the send
        succeeds.
        """
        due = self._load(campaign_id)
        pending = pending_status(due.delivery_type).value
        if not self._claim(due, raise_errors=True):
            raise InvalidTransitionError(f"Campaign {campaign_id} is not {pending!r}; nothing to dispatch")
        try:
            result = self._execute(campaign_id)
        except Exception:
            if is_one_shot(due.delivery_type):
                self._finish_failed(due)
            else:
                self._return_to_active(campaign_id)
            raise
        if not is_one_shot(due.delivery_type):
            self._return_to_active(campaign_id)
        return result

    def schedule_at(self, campaign_id: UUID, when: datetime) -> DispatchResult | None:
        """Arm a one-shot campaign for *when*; dispatch now if *when* has passed.

        Calling again replaces the previous arm.  Returns the dispatch
        result when the campaign was sent immediately, else ``None``.
        """
        when = ensure_utc(when)
        with self.session_factory() as db:
            campaigns = CampaignRepository(db)
            campaign = campaigns.get(campaign_id)
            if campaign is None:
                raise NotFoundError(f"Campaign {campaign_id} not found")
            if campaign.delivery_type != DeliveryType.SCHEDULED.value:
                raise InvalidTransitionError(
                    f"Campaign {campaign_id} is {campaign.delivery_type!r}; only scheduled campaigns take a send time"
                )
            current, target = campaign.status, CampaignStatus.SCHEDULED.value
            require_transition(campaign.delivery_type, current, target)
            if not campaigns.compare_and_set_status(campaign_id, current, target, scheduled_at=when):
                db.rollback()
                raise InvalidTransitionError(f"Campaign {campaign_id} changed while being scheduled")
            db.commit()

        self._disarm(campaign_id)
        if when <= self.clock():
            logger.info("Campaign %s send time has passed; dispatching now", campaign_id)
            due = DueCampaign(campaign_id, DeliveryType.SCHEDULED.value, when)
            if not self._claim(due, raise_errors=True):
                raise InvalidTransitionError(f"Campaign {campaign_id} was claimed elsewhere")
            try:
                return self._execute(campaign_id)
            except Exception:
                self._finish_failed(due)
                raise

        self._scheduler.add_job(
            self._fire_timer,
            trigger="date",
            run_date=when,
            args=[campaign_id],
            id=_timer_id(campaign_id),
            replace_existing=True,
        )
        logger.info("Campaign %s armed for %s", campaign_id, when.isoformat())
        return None

    def activate(self, campaign_id: UUID) -> datetime:
        """Move a recurring campaign from draft to active and set its first fire time."""
        with self.session_factory() as db:
            campaigns = CampaignRepository(db)
            campaign = campaigns.get(campaign_id)
            if campaign is None:
                raise NotFoundError(f"Campaign {campaign_id} not found")
            if campaign.delivery_type != DeliveryType.RECURRING.value or not campaign.recurring_schedule:
                raise InvalidTransitionError(f"Campaign {campaign_id} has no recurring schedule")
            current, target = campaign.status, CampaignStatus.ACTIVE.value
            require_transition(campaign.delivery_type, current, target)

            rule = RecurrenceRule.from_dict(campaign.recurring_schedule)
            first = next_fire_time(rule, self.clock().astimezone(self.timezone)).astimezone(timezone.utc)
            if not campaigns.compare_and_set_status(campaign_id, current, target, scheduled_at=first):
                db.rollback()
                raise InvalidTransitionError(f"Campaign {campaign_id} changed while being activated")
            db.commit()
        logger.info("Recurring campaign %s active; first fire %s", campaign_id, first.isoformat())
        return first

    def stop_recurring(self, campaign_id: UUID) -> bool:
        """Stop an active recurring campaign.

        Returns ``False`` if it is not active right now, including drafts
        that were never activated.
        """
        due = self._load(campaign_id)
        if due.delivery_type != DeliveryType.RECURRING.value:
            raise InvalidTransitionError(f"Campaign {campaign_id} is not recurring")
        return self._leave_pending(due, CampaignStatus.STOPPED)

    def cancel(self, campaign_id: UUID) -> bool:
        """Cancel a campaign that has not started sending.

        Returns ``False`` when the campaign already left its pending status;
        a dispatch in progress is never interrupted.
        """
        disarmed = self._disarm(campaign_id)
        due = self._load(campaign_id)
        cancelled = self._leave_pending(due, CampaignStatus.CANCELLED)
        if not cancelled and disarmed:
            logger.info("Timer for campaign %s removed but the campaign had already started", campaign_id)
        return cancelled

    # -- recurrence ---------------------------------------------------------

    def next_fire_after(self, rule: RecurrenceRule, fired_at: datetime, now: datetime) -> datetime:
        """Next fire time after the occurrence at *fired_at*.

        Occurrences already in the past by *now* collapse into the next
        future one.
        """
        local_fired = fired_at.astimezone(self.timezone)
        candidate = next_fire_time(rule.with_last_sent(local_fired), local_fired)
        if candidate <= now:
            local_now = now.astimezone(self.timezone)
            candidate = next_fire_time(rule.with_last_sent(local_now), local_now)
        return candidate.astimezone(timezone.utc)

    # -- internals ----------------------------------------------------------

    def _load(self, campaign_id: UUID) -> DueCampaign:
        with self.session_factory() as db:
            campaign = CampaignRepository(db).get(campaign_id)
            if campaign is None:
                raise NotFoundError(f"Campaign {campaign_id} not found")
            return DueCampaign(
                campaign_id=campaign.id,
                delivery_type=campaign.delivery_type,
                scheduled_at=ensure_utc(campaign.scheduled_at),
                recurring_schedule=dict(campaign.recurring_schedule) if campaign.recurring_schedule else None,
            )

    def _process(self, due: DueCampaign) -> DispatchResult | bool | None:
        """Claim, dispatch and finalize one campaign.

        Returns the dispatch result, ``None`` when the claim was lost, or
        ``False`` when the dispatch failed.
        """
        if not self._claim(due):
            return None
        try:
            result = self._execute(due.campaign_id)
        except Exception:
            logger.exception("Dispatch of campaign %s failed", due.campaign_id)
            self._finish_failed(due)
            return False
        if not is_one_shot(due.delivery_type):
            self._rearm(due, record_sent=True)
        return result

    def _claim(self, due: DueCampaign, raise_errors: bool = False) -> bool:
        pending = pending_status(due.delivery_type).value
        sending = CampaignStatus.SENDING.value
        require_transition(due.delivery_type, pending, sending)
        try:
            with self.session_factory() as db:
                # updated_at doubles as the claim time for stale-claim release.
                claimed = CampaignRepository(db).compare_and_set_status(
                    due.campaign_id, pending, sending, updated_at=self.clock()
                )
                db.commit()
        except (StoreError, SQLAlchemyError) as exc:
            if raise_errors:
                raise StoreError(f"Could not claim campaign {due.campaign_id}") from exc
            logger.exception("Could not claim campaign %s; skipping it this poll", due.campaign_id)
            return False
        if not claimed:
            logger.info("Campaign %s is no longer %r; skipping", due.campaign_id, pending)
        return claimed

    def _execute(self, campaign_id: UUID) -> DispatchResult:
        with self.session_factory() as db:
            executor = DeliveryExecutor(
                db,
                self.transport,
                batch_size=self.batch_size,
                security=self.security,
                clock=self.clock,
            )
            return executor.dispatch(campaign_id)

    def _finish_failed(self, due: DueCampaign) -> None:
        if is_one_shot(due.delivery_type):
            self._transition(due, CampaignStatus.SENDING, CampaignStatus.FAILED)
        else:
            # Skip the failed occurrence instead of retrying it every poll.
            self._rearm(due, record_sent=False)

    def _rearm(self, due: DueCampaign, record_sent: bool) -> None:
        """Write the next fire time and return the campaign to ``active`` in one update.

        When that write fails the campaign still goes back to ``active`` with
        its old ``scheduled_at``, so the next poll picks it up again.
        """
        sending, active = CampaignStatus.SENDING.value, CampaignStatus.ACTIVE.value
        require_transition(due.delivery_type, sending, active)
        now = self.clock()
        rule = RecurrenceRule.from_dict(due.recurring_schedule)
        next_at = self.next_fire_after(rule, due.scheduled_at or now, now)
        schedule = dict(due.recurring_schedule or {})
        if record_sent:
            schedule.pop("lastSent", None)
            schedule["last_sent"] = now.isoformat()
        try:
            with self.session_factory() as db:
                moved = CampaignRepository(db).compare_and_set_status(
                    due.campaign_id, sending, active, scheduled_at=next_at, recurring_schedule=schedule
                )
                db.commit()
        except (StoreError, SQLAlchemyError):
            logger.exception(
                "Could not re-arm campaign %s; it stays due at its previous time", due.campaign_id
            )
            self._return_to_active(due.campaign_id)
            return
        if moved:
            logger.info("Campaign %s re-armed for %s", due.campaign_id, next_at.isoformat())
        else:
            logger.warning("Campaign %s was not %r; not re-armed", due.campaign_id, sending)

    def _return_to_active(self, campaign_id: UUID) -> bool:
        """Release a recurring claim without touching its schedule, retrying failed writes."""
        due = DueCampaign(campaign_id, DeliveryType.RECURRING.value, None)
        for attempt in range(1, _RELEASE_ATTEMPTS + 1):
            try:
                return self._transition(due, CampaignStatus.SENDING, CampaignStatus.ACTIVE, raise_errors=True)
            except StoreError:
                logger.warning(
                    "Attempt %d/%d to return campaign %s to 'active' failed",
                    attempt, _RELEASE_ATTEMPTS, campaign_id,
                )
        logger.error(
            "Campaign %s left in 'sending'; it is released after %ds", campaign_id, self.stale_claim_seconds
        )
        return False

    def _transition(
        self,
        due: DueCampaign,
        current: CampaignStatus,
        target: CampaignStatus,
        raise_errors: bool = False,
    ) -> bool:
        require_transition(due.delivery_type, current.value, target.value)
        try:
            with self.session_factory() as db:
                moved = CampaignRepository(db).compare_and_set_status(due.campaign_id, current.value, target.value)
                db.commit()
        except (StoreError, SQLAlchemyError) as exc:
            if raise_errors:
                raise StoreError(f"Could not move campaign {due.campaign_id} to {target.value!r}") from exc
            logger.exception("Could not move campaign %s to %r", due.campaign_id, target.value)
            return False
        if not moved:
            logger.warning("Campaign %s was not %r; left unchanged", due.campaign_id, current.value)
        return moved

    def _leave_pending(self, due: DueCampaign, target: CampaignStatus) -> bool:
        """Move a not-yet-sending campaign (pending or draft) to *target*.

        Returns ``False`` when the campaign's current status cannot move to
        *target*, including once a dispatch has claimed it.
        """
        with self.session_factory() as db:
            campaigns = CampaignRepository(db)
            campaign = campaigns.get(due.campaign_id)
            current = campaign.status if campaign is not None else None
            waiting = {pending_status(due.delivery_type).value, CampaignStatus.DRAFT.value}
            if current not in waiting or not can_transition(due.delivery_type, current, target.value):
                logger.info(
                    "Campaign %s is %r; cannot move it to %r", due.campaign_id, current, target.value
                )
                return False
            moved = campaigns.compare_and_set_status(due.campaign_id, current, target.value)
            db.commit()
        if moved:
            logger.info("Campaign %s moved %r → %r", due.campaign_id, current, target.value)
        return moved

    def _armed_ids(self) -> list[str]:
        return [
            job.id[len(_TIMER_PREFIX):]
            for job in self._scheduler.get_jobs()
            if job.id.startswith(_TIMER_PREFIX)
        ]

    def _disarm(self, campaign_id: UUID) -> bool:
        try:
            self._scheduler.remove_job(_timer_id(campaign_id))
        except JobLookupError:
            return False
        return True

    def _fire_timer(self, campaign_id: UUID) -> None:
        try:
            due = self._load(campaign_id)
            self._process(due)
        except Exception:
            logger.exception("Armed dispatch of campaign %s failed", campaign_id)


def build_scheduler(settings: Settings | None = None) -> CampaignScheduler:
    """Wire a scheduler to the configured database and the Web Push transport."""
    settings = settings or get_settings()
    return CampaignScheduler(
        get_session_factory(),
        WebPushTransport.from_settings(settings),
        settings=settings,
    )
