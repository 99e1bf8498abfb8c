"""GET /scheduler/status: poll loop state and armed one-shot timers."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from pushcast.api.deps import get_scheduler
from pushcast.scheduling.scheduler import CampaignScheduler

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


@router.get("/status", summary="Scheduler state")
def scheduler_status(scheduler: CampaignScheduler = Depends(get_scheduler)):
    return scheduler.status()
