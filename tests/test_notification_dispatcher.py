"""
Notification outbox dispatch tests
Delivery, failure bookkeeping and the webhook sender
"""

import pytest
import requests
from sqlalchemy import select

from config import Config
from jobs.notification_dispatcher import (
    NotificationDeliveryError, WebhookNotificationSender, dispatch_pending, run_notification_dispatch
)
from models import Activity, OutboxEvent
from services.activity_service import ActivityService

CREATOR_ID = 100


class RecordingSender:
    def __init__(self):
        self.sent = []

    def send(self, event):
        self.sent.append(event.event_type)


class FailingSender:
    def send(self, event):
        raise NotificationDeliveryError("notification service unavailable")


@pytest.fixture
def activity_id():
    result = ActivityService.submit_activity("Notified paper", CREATOR_ID, "journal_club_standard_v1")
    assert result.success
    return result.activity_id


class TestDispatch:

    def test_pending_events_are_delivered_once(self, session, activity_id):
        sender = RecordingSender()

        results = dispatch_pending(sender=sender)

        assert results == {"delivered": 1, "failed": 0}
        assert sender.sent == ["activity_created"]
        event = session.execute(select(OutboxEvent)).scalar_one()
        assert event.processed
        assert event.processed_at is not None

        assert dispatch_pending(sender=sender) == {"delivered": 0, "failed": 0}

    def test_failure_keeps_the_change_and_counts_retries(self, session, activity_id):
        results = dispatch_pending(sender=FailingSender())

        assert results == {"delivered": 0, "failed": 1}
        event = session.execute(select(OutboxEvent)).scalar_one()
        assert not event.processed
        assert event.retry_count == 1
        assert "unavailable" in event.last_error
        assert session.get(Activity, activity_id) is not None

    def test_exhausted_events_are_no_longer_pending(self, session, activity_id, monkeypatch):
        monkeypatch.setattr(Config, "OUTBOX_MAX_RETRIES", 2)
        dispatch_pending(sender=FailingSender())
        dispatch_pending(sender=FailingSender())

        sender = RecordingSender()
        assert dispatch_pending(sender=sender) == {"delivered": 0, "failed": 0}
        assert sender.sent == []

    async def test_scheduler_entry_point(self, activity_id):
        results = await run_notification_dispatch()
        assert results["delivered"] == 1


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


class TestWebhookSender:

    def test_posts_event_payload(self, session, activity_id, monkeypatch):
        captured = {}

        def fake_post(url, json=None, timeout=None):
            captured.update(url=url, json=json, timeout=timeout)
            return FakeResponse(200)

        monkeypatch.setattr(requests, "post", fake_post)
        event = session.execute(select(OutboxEvent)).scalar_one()

        WebhookNotificationSender("https://notify.example/events", timeout=3).send(event)

        assert captured["url"] == "https://notify.example/events"
        assert captured["timeout"] == 3
        assert captured["json"]["event_type"] == "activity_created"
        assert captured["json"]["aggregate_id"] == str(activity_id)

    def test_http_error_is_a_delivery_error(self, session, activity_id, monkeypatch):
        monkeypatch.setattr(requests, "post", lambda *args, **kwargs: FakeResponse(502, "bad gateway"))
        event = session.execute(select(OutboxEvent)).scalar_one()

        with pytest.raises(NotificationDeliveryError, match="502"):
            WebhookNotificationSender("https://notify.example/events").send(event)

    def test_connection_error_is_a_delivery_error(self, session, activity_id, monkeypatch):
        def refuse(*args, **kwargs):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(requests, "post", refuse)
        event = session.execute(select(OutboxEvent)).scalar_one()

        with pytest.raises(NotificationDeliveryError):
            WebhookNotificationSender("https://notify.example/events").send(event)
