"""Notification payload shared by every delivery of a campaign.

The service worker posts ``deliveryId`` back to the click/close tracking
endpoints, so it is filled in per subscriber once the delivery row exists.
"""
from __future__ import annotations

import json
from typing import Any
from uuid import UUID

from pushcast.db.models import Campaign


def build_payload_template(campaign: Campaign) -> dict[str, Any]:
    return {
        "title": campaign.title,
        "body": campaign.body,
        "icon": campaign.icon_url,
        "image": campaign.image_url,
        "url": campaign.url,
        "campaignId": str(campaign.id),
        "deliveryId": None,
    }


def render_payload(template: dict[str, Any], delivery_id: UUID) -> bytes:
    return json.dumps({**template, "deliveryId": str(delivery_id)}, ensure_ascii=False).encode("utf-8")
