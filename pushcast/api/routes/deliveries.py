"""Service-worker callbacks for notification clicks and closes."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from pushcast.api.deps import get_tracker, http_errors
from pushcast.db.models import Delivery
from pushcast.dispatch.tracking import DeliveryTracker

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


def _serialize_delivery(delivery: Delivery) -> dict:
    return {
        "delivery_id": str(delivery.id),
        "campaign_id": str(delivery.campaign_id),
        "status": delivery.status,
        "clicked_at": delivery.clicked_at.isoformat() if delivery.clicked_at else None,
        "closed_at": delivery.closed_at.isoformat() if delivery.closed_at else None,
    }


@router.post("/{delivery_id}/click", summary="Record a notification click")
def record_click(delivery_id: UUID, tracker: DeliveryTracker = Depends(get_tracker)):
    with http_errors():
        delivery = tracker.record_click(delivery_id)
    return _serialize_delivery(delivery)


@router.post("/{delivery_id}/close", summary="Record a notification close")
def record_close(delivery_id: UUID, tracker: DeliveryTracker = Depends(get_tracker)):
    with http_errors():
        delivery = tracker.record_close(delivery_id)
    return _serialize_delivery(delivery)
