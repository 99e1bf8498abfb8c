"""Campaign delivery types, statuses and the per-type transition table.

    immediate : draft → sending → completed | failed
    scheduled : draft → scheduled → sending → completed | failed
                scheduled → scheduled (re-arm), failed → scheduled (retry)
    recurring : draft → active → sending → active …
                active → stopped
    any pending status → cancelled

A campaign is picked up for dispatch only while it sits in the pending
status for its delivery type; claiming it moves it to ``sending``.
"""
from __future__ import annotations

from enum import Enum

from pushcast.core.errors import InvalidTransitionError


class DeliveryType(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    SENDING = "sending"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    CANCELLED = "cancelled"


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    CLICKED = "clicked"


_D = CampaignStatus

_TRANSITIONS: dict[DeliveryType, dict[CampaignStatus, frozenset[CampaignStatus]]] = {
    DeliveryType.IMMEDIATE: {
        _D.DRAFT: frozenset({_D.SENDING, _D.CANCELLED}),
        _D.SENDING: frozenset({_D.COMPLETED, _D.FAILED}),
    },
    DeliveryType.SCHEDULED: {
        _D.DRAFT: frozenset({_D.SCHEDULED, _D.CANCELLED}),
        _D.SCHEDULED: frozenset({_D.SCHEDULED, _D.SENDING, _D.CANCELLED}),
        _D.SENDING: frozenset({_D.COMPLETED, _D.FAILED}),
        _D.FAILED: frozenset({_D.SCHEDULED}),
    },
    DeliveryType.RECURRING: {
        _D.DRAFT: frozenset({_D.ACTIVE, _D.CANCELLED}),
        _D.ACTIVE: frozenset({_D.SENDING, _D.STOPPED, _D.CANCELLED}),
        _D.SENDING: frozenset({_D.ACTIVE}),
    },
}

PENDING_STATUS: dict[DeliveryType, CampaignStatus] = {
    DeliveryType.IMMEDIATE: CampaignStatus.DRAFT,
    DeliveryType.SCHEDULED: CampaignStatus.SCHEDULED,
    DeliveryType.RECURRING: CampaignStatus.ACTIVE,
}

# Delivery types the poll loop picks up on their own.
POLLED_TYPES: frozenset[DeliveryType] = frozenset({DeliveryType.SCHEDULED, DeliveryType.RECURRING})


def can_transition(delivery_type: str, current: str, target: str) -> bool:
    """Return whether *current* → *target* is allowed for *delivery_type*."""
    try:
        table = _TRANSITIONS[DeliveryType(delivery_type)]
        return CampaignStatus(target) in table.get(CampaignStatus(current), frozenset())
    except ValueError:
        return False


def require_transition(delivery_type: str, current: str, target: str) -> None:
    """Raise ``InvalidTransitionError`` unless *current* → *target* is allowed."""
    if not can_transition(delivery_type, current, target):
        raise InvalidTransitionError(
            f"Invalid {delivery_type} campaign transition {current!r} → {target!r}"
        )


def pending_status(delivery_type: str) -> CampaignStatus:
    """Return the status in which a campaign of *delivery_type* awaits dispatch."""
    try:
        return PENDING_STATUS[DeliveryType(delivery_type)]
    except ValueError as exc:
        raise InvalidTransitionError(f"Unknown delivery_type {delivery_type!r}") from exc


def is_one_shot(delivery_type: str) -> bool:
    return delivery_type != DeliveryType.RECURRING.value
