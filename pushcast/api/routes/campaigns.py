"""Campaign dispatch and scheduling routes.

GET    /campaigns/scheduled      lists armed campaigns, optionally for one site.
POST   /campaigns/{id}/dispatch  sends now and returns the outcome counts.
POST   /campaigns/{id}/schedule  arms a scheduled campaign for a send time.
DELETE /campaigns/{id}/schedule  cancels a campaign that has not started.
POST   /campaigns/{id}/activate  starts a recurring campaign.
POST   /campaigns/{id}/stop      stops a recurring campaign.
"""
from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from pushcast.api.deps import get_scheduler, http_errors
from pushcast.scheduling.scheduler import CampaignScheduler

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class ScheduleBody(BaseModel):
    scheduled_at: datetime


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/scheduled", summary="List armed campaigns")
def list_scheduled(site_id: UUID | None = None, scheduler: CampaignScheduler = Depends(get_scheduler)):
    with http_errors():
        return scheduler.list_pending(site_id)


@router.post("/{campaign_id}/dispatch", summary="Send a campaign now")
def dispatch_campaign(campaign_id: UUID, scheduler: CampaignScheduler = Depends(get_scheduler)):
    with http_errors():
        result = scheduler.dispatch(campaign_id)
    return result.as_dict()


@router.post("/{campaign_id}/schedule", summary="Arm a scheduled campaign")
def schedule_campaign(
    campaign_id: UUID,
    body: ScheduleBody,
    scheduler: CampaignScheduler = Depends(get_scheduler),
):
    with http_errors():
        result = scheduler.schedule_at(campaign_id, body.scheduled_at)
    if result is not None:
        return {"campaign_id": str(campaign_id), "status": "dispatched", "result": result.as_dict()}
    return {"campaign_id": str(campaign_id), "status": "scheduled", "scheduled_at": body.scheduled_at.isoformat()}


@router.delete("/{campaign_id}/schedule", summary="Cancel a pending campaign")
def cancel_campaign(campaign_id: UUID, scheduler: CampaignScheduler = Depends(get_scheduler)):
    with http_errors():
        cancelled = scheduler.cancel(campaign_id)
    return {"campaign_id": str(campaign_id), "cancelled": cancelled}


@router.post("/{campaign_id}/activate", summary="Start a recurring campaign")
def activate_campaign(campaign_id: UUID, scheduler: CampaignScheduler = Depends(get_scheduler)):
    with http_errors():
        first_fire = scheduler.activate(campaign_id)
    return {"campaign_id": str(campaign_id), "status": "active", "scheduled_at": first_fire.isoformat()}


@router.post("/{campaign_id}/stop", summary="Stop a recurring campaign")
def stop_campaign(campaign_id: UUID, scheduler: CampaignScheduler = Depends(get_scheduler)):
    with http_errors():
        stopped = scheduler.stop_recurring(campaign_id)
    return {"campaign_id": str(campaign_id), "stopped": stopped}
