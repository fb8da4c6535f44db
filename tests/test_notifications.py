import json
from contextlib import asynccontextmanager
from datetime import date
from types import SimpleNamespace
from uuid import uuid4

import httpx
import pytest
from prometheus_client import REGISTRY

from stay_booking import tasks
from stay_booking.config import settings
from stay_booking.models import Notification, utcnow
from stay_booking.notifications import (
    booking_status_recipients,
    deliver_notification,
    deliver_pending_notifications,
    enqueue_delivery,
)

from conftest import make_booking


async def add_notification(db, user, **kwargs):
    notification = Notification(
        user_id=user.id,
        type="BOOKING_UPDATE",
        title="Booking confirmed",
        message="Booking #1234 status updated to CONFIRMED",
        **kwargs,
    )
    db.add(notification)
    await db.commit()
    return notification


def mail_client(status_code=202, sent=None):
    def handler(request):
        if sent is not None:
            sent.append(json.loads(request.content))
        return httpx.Response(status_code, json={})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def enqueue_failures():
    return REGISTRY.get_sample_value("notification_failures_total", {"stage": "enqueue"}) or 0


@pytest.fixture
def email_api(monkeypatch):
    monkeypatch.setattr(settings, "EMAIL_API_URL", "https://mail.example.com/send")


# =============================================================================
# RECIPIENTS
# =============================================================================

async def test_recipients_exclude_the_actor(db, listing, guest, host, admin):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    assert booking_status_recipients(booking, guest.id) == [host.id]
    assert booking_status_recipients(booking, host.id) == [guest.id]
    assert booking_status_recipients(booking, admin.id) == [guest.id, host.id]


async def test_no_recipient_when_host_books_own_listing(db, listing, host):
    booking = await make_booking(db, listing, host, date(2024, 1, 10), date(2024, 1, 13))

    assert booking_status_recipients(booking, host.id) == []


# =============================================================================
# DELIVERY
# =============================================================================

async def test_delivery_sends_email(db, guest, email_api):
    notification = await add_notification(db, guest)
    sent = []

    async with mail_client(sent=sent) as client:
        assert await deliver_notification(db, client, notification.id) is True

    assert sent[0]["to"] == "guest@example.com"
    assert sent[0]["subject"] == "Booking confirmed"
    assert notification.delivered_at is not None
    assert notification.delivery_attempts == 1


async def test_failed_delivery_is_retried_later(db, guest, email_api):
    notification = await add_notification(db, guest)

    async with mail_client(status_code=503) as client:
        assert await deliver_notification(db, client, notification.id) is False

    assert notification.delivered_at is None
    assert notification.delivery_attempts == 1


async def test_in_app_only_without_email_api(db, guest):
    notification = await add_notification(db, guest)
    sent = []

    async with mail_client(sent=sent) as client:
        assert await deliver_notification(db, client, notification.id) is True

    assert sent == []
    assert notification.delivered_at is not None


async def test_sweep_skips_delivered_and_exhausted(db, guest, email_api):
    pending = await add_notification(db, guest)
    await add_notification(db, guest, delivered_at=utcnow(), delivery_attempts=1)
    await add_notification(db, guest, delivery_attempts=settings.NOTIFICATION_MAX_ATTEMPTS)
    sent = []

    async with mail_client(sent=sent) as client:
        results = await deliver_pending_notifications(db, client)

    assert results == {"delivered": 1, "failed": 0}
    assert len(sent) == 1
    assert pending.delivered_at is not None


async def test_sweep_task_uses_worker_session(db, guest, monkeypatch):
    await add_notification(db, guest)

    @asynccontextmanager
    async def session():
        yield db

    async def no_dispose():
        pass

    monkeypatch.setattr(tasks, "get_async_session", session)
    monkeypatch.setattr(tasks, "dispose_engine", no_dispose)

    assert await tasks._deliver_pending_notifications() == {"delivered": 1, "failed": 0}


# =============================================================================
# ENQUEUE
# =============================================================================

def test_enqueue_hands_ids_to_worker(monkeypatch):
    delayed = []
    monkeypatch.setattr(tasks, "deliver_notification", SimpleNamespace(delay=delayed.append))

    ids = [uuid4(), uuid4()]
    enqueue_delivery(ids)

    assert delayed == [str(i) for i in ids]


def test_broker_outage_is_swallowed(monkeypatch):
    def delay(notification_id):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(tasks, "deliver_notification", SimpleNamespace(delay=delay))
    before = enqueue_failures()

    enqueue_delivery([uuid4(), uuid4()])

    after = enqueue_failures()
    assert after - before == 2
