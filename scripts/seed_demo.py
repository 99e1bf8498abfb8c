#!/usr/bin/env python3
"""Seed demo data: 1 Site with a fresh VAPID key pair, 10 Subscribers,
1 Segment, and one campaign per delivery type.

Usage:
    python scripts/seed_demo.py          # uses DATABASE_URL from env / .env
    DATABASE_URL=... python scripts/seed_demo.py

The private key is sealed with FERNET_KEY when one is configured.
"""
from __future__ import annotations

import base64
import sys
from datetime import timedelta

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from pushcast.core.security import SecurityService
from pushcast.core.settings import get_settings
from pushcast.core.timeutil import utcnow
from pushcast.db.base import Base
from pushcast.db.models import Campaign, Segment, SegmentMember, Site, Subscriber


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_vapid_keys() -> tuple[str, str]:
    """Return ``(public_key, private_key)`` in the base64url form browsers and pywebpush take."""
    private = ec.generate_private_key(ec.SECP256R1())
    public_raw = private.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )
    private_raw = private.private_numbers().private_value.to_bytes(32, "big")
    return _b64url(public_raw), _b64url(private_raw)


def seed(session: Session, security: SecurityService) -> None:
    """Insert a demo site, its subscribers, a segment and three campaigns."""
    now = utcnow()
    public_key, private_key = generate_vapid_keys()
    site = Site(
        name="Demo Shop",
        domain="shop.example.com",
        vapid_public_key=public_key,
        vapid_private_key=security.seal_private_key(private_key),
    )
    session.add(site)
    session.flush()

    subscribers: list[Subscriber] = []
    for index in range(10):
        subscriber = Subscriber(
            site_id=site.id,
            endpoint=f"https://fcm.googleapis.com/fcm/send/demo-{index:03d}",
            p256dh_key=f"demo-p256dh-{index:03d}",
            auth_key=f"demo-auth-{index:03d}",
            user_agent="Mozilla/5.0 (demo)",
            # Two unsubscribed browsers that dispatch must skip.
            is_active=index < 8,
        )
        session.add(subscriber)
        subscribers.append(subscriber)
    session.flush()

    segment = Segment(site_id=site.id, name="Newsletter readers")
    session.add(segment)
    session.flush()
    for subscriber in subscribers[:4]:
        session.add(SegmentMember(segment_id=segment.id, subscriber_id=subscriber.id))

    session.add_all(
        [
            Campaign(
                site_id=site.id,
                name="Welcome",
                title="Thanks for subscribing",
                body="We'll only ping you about things that matter.",
                url="https://shop.example.com/",
                delivery_type="immediate",
            ),
            Campaign(
                site_id=site.id,
                segment_id=segment.id,
                name="Spring sale",
                title="Spring sale starts now",
                body="20% off everything until Sunday.",
                url="https://shop.example.com/sale",
                image_url="https://shop.example.com/static/sale.png",
                delivery_type="scheduled",
                status="scheduled",
                scheduled_at=now + timedelta(hours=1),
            ),
            Campaign(
                site_id=site.id,
                name="Weekly digest",
                title="This week at Demo Shop",
                url="https://shop.example.com/digest",
                delivery_type="recurring",
                recurring_schedule={"frequency": "weekly", "day_of_week": 1, "hour": 9, "minute": 0},
            ),
        ]
    )

    session.commit()
    print(f"Seeded site {site.id}: {len(subscribers)} Subscribers, 1 Segment, 3 Campaigns.")


def main() -> None:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        seed(session, SecurityService.from_key(settings.fernet_key))


if __name__ == "__main__":
    main()
