import asyncio
import json
from uuid import uuid4

import httpx
import pytest

from shared import verify_signature

from app.core.database import SessionLocal
from app.models.webhook import DeliveryStatus, WebhookDeliveryLog, WebhookSubscription
from app.schemas.webhook_schema import WebhookCreate
from app.services.webhook_service import WebhookService, retry_delay_seconds


class Recorder:
    """MockTransport handler answering from a script of status codes."""

    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status, text="ok" if status < 400 else "server said no")


@pytest.fixture
def tenant_id():
    return uuid4()


@pytest.fixture
def sleeps():
    return []


def make_service(handler, sleeps, **kwargs):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookService(SessionLocal, client, sleep=fake_sleep, **kwargs)


def subscribe(service, tenant_id, url="https://hooks.example.com/a", events=("booking.created",), **fields):
    return service.create(
        tenant_id,
        WebhookCreate(name=fields.pop("name", "CRM"), url=url, events=list(events), **fields),
    )


def reload(db, webhook_id):
    db.expire_all()
    return db.get(WebhookSubscription, webhook_id)


class TestDeliver:
    @pytest.mark.asyncio
    async def test_successful_delivery_is_signed_and_counted(self, db, tenant_id, sleeps):
        recorder = Recorder(200)
        service = make_service(recorder, sleeps)
        webhook = subscribe(service, tenant_id)

        result = await service.deliver(webhook, "booking.created", {"booking_id": "b1"})

        assert result.success is True
        assert result.attempts == 1
        assert sleeps == []

        [request] = recorder.requests
        body = request.content.decode()
        assert json.loads(body) == {"booking_id": "b1"}
        assert verify_signature(
            webhook.secret,
            request.headers["X-Webhook-Timestamp"],
            body,
            request.headers["X-Webhook-Signature"],
        )
        assert request.headers["X-Webhook-Event"] == "booking.created"

        stored = reload(db, webhook.id)
        assert (stored.total_calls, stored.successful_calls, stored.failed_calls) == (1, 1, 0)
        assert stored.last_triggered_at is not None
        [log] = db.query(WebhookDeliveryLog).all()
        assert log.status == DeliveryStatus.SUCCESS
        assert log.status_code == 200
        assert log.attempts == 1

    @pytest.mark.asyncio
    async def test_failing_endpoint_is_retried_with_exponential_backoff(self, db, tenant_id, sleeps):
        recorder = Recorder(500)
        service = make_service(recorder, sleeps)
        webhook = subscribe(service, tenant_id, retry_attempts=3, retry_delay_ms=1000)

        result = await service.deliver(webhook, "booking.created", {"booking_id": "b1"})

        assert result.success is False
        assert result.attempts == 3
        assert len(recorder.requests) == 3
        assert sleeps == [1.0, 2.0]

        stored = reload(db, webhook.id)
        assert (stored.total_calls, stored.successful_calls, stored.failed_calls) == (1, 0, 1)
        assert stored.last_error == "HTTP 500: server said no"
        [log] = db.query(WebhookDeliveryLog).all()
        assert log.status == DeliveryStatus.FAILED
        assert log.attempts == 3
        assert log.error_message == "HTTP 500: server said no"

    @pytest.mark.asyncio
    async def test_delivery_row_is_updated_after_every_attempt(self, db, tenant_id, sleeps):
        seen = []

        def handler(request):
            with SessionLocal() as session:
                log = session.query(WebhookDeliveryLog).one()
                seen.append((log.attempts, log.status, log.status_code))
            return httpx.Response(500, text="down")

        service = make_service(handler, sleeps)
        webhook = subscribe(service, tenant_id, retry_attempts=3, retry_delay_ms=10)

        await service.deliver(webhook, "booking.created", {})

        assert seen == [
            (0, DeliveryStatus.PENDING, None),
            (1, DeliveryStatus.PENDING, 500),
            (2, DeliveryStatus.PENDING, 500),
        ]
        db.expire_all()
        log = db.query(WebhookDeliveryLog).one()
        assert (log.attempts, log.status) == (3, DeliveryStatus.FAILED)

    @pytest.mark.asyncio
    async def test_recovers_on_a_later_attempt(self, db, tenant_id, sleeps):
        recorder = Recorder(503, httpx.ConnectError("refused"), 204)
        service = make_service(recorder, sleeps)
        webhook = subscribe(service, tenant_id, retry_attempts=5, retry_delay_ms=100)

        result = await service.deliver(webhook, "booking.created", {})

        assert result.success is True
        assert result.attempts == 3
        assert sleeps == [0.1, 0.2]
        stored = reload(db, webhook.id)
        assert (stored.total_calls, stored.successful_calls, stored.failed_calls) == (1, 1, 0)

    def test_retry_delay_doubles(self):
        assert [retry_delay_seconds(1000, n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


class TestTrigger:
    @pytest.mark.asyncio
    async def test_zero_subscribers_is_success(self, tenant_id, sleeps):
        service = make_service(Recorder(200), sleeps)

        assert await service.trigger(tenant_id, "booking.created", {}) == {
            "success": True,
            "triggered": 0,
            "results": [],
        }

    @pytest.mark.asyncio
    async def test_fans_out_to_matching_active_subscriptions_only(self, db, tenant_id, sleeps):
        def handler(request):
            if request.url.host == "down.example.com":
                return httpx.Response(500, text="down")
            return httpx.Response(200)

        service = make_service(handler, sleeps)
        good = subscribe(service, tenant_id, url="https://up.example.com/hook")
        bad = subscribe(service, tenant_id, url="https://down.example.com/hook", retry_attempts=1)
        subscribe(service, tenant_id, url="https://other.example.com/hook", events=("contact.created",))
        subscribe(service, uuid4(), url="https://foreign.example.com/hook")
        inactive = subscribe(service, tenant_id, url="https://off.example.com/hook")
        db.query(WebhookSubscription).filter(WebhookSubscription.id == inactive.id).update({"is_active": False})
        db.commit()

        summary = await service.trigger(tenant_id, "booking.created", {"booking_id": "b1"})

        assert summary["success"] is True
        assert summary["triggered"] == 2
        by_id = {r["webhook_id"]: r for r in summary["results"]}
        assert by_id[str(good.id)]["success"] is True
        assert by_id[str(bad.id)]["success"] is False
        assert by_id[str(bad.id)]["attempts"] == 1

    @pytest.mark.asyncio
    async def test_healthy_subscription_finishes_while_another_is_retrying(self, db, tenant_id):
        backoff_released = asyncio.Event()

        async def gated_sleep(seconds):
            await backoff_released.wait()

        def handler(request):
            if request.url.host == "unreachable.example.com":
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        service = WebhookService(SessionLocal, client, sleep=gated_sleep)
        unreachable = subscribe(service, tenant_id, url="https://unreachable.example.com/hook", retry_attempts=3)
        healthy = subscribe(service, tenant_id, url="https://up.example.com/hook")

        task = asyncio.create_task(service.trigger(tenant_id, "booking.created", {"booking_id": "b1"}))
        for _ in range(200):
            if reload(db, healthy.id).successful_calls == 1:
                break
            await asyncio.sleep(0.01)

        assert reload(db, healthy.id).successful_calls == 1
        assert not task.done()
        assert reload(db, unreachable.id).total_calls == 0

        backoff_released.set()
        summary = await task

        by_id = {r["webhook_id"]: r for r in summary["results"]}
        assert by_id[str(healthy.id)]["success"] is True
        assert by_id[str(unreachable.id)]["success"] is False
        assert by_id[str(unreachable.id)]["attempts"] == 3
        assert reload(db, unreachable.id).failed_calls == 1

    @pytest.mark.asyncio
    async def test_internal_error_fails_gracefully(self, tenant_id, sleeps, monkeypatch):
        from app.routers import crud

        def broken(*args, **kwargs):
            raise RuntimeError("database is gone")

        monkeypatch.setattr(crud, "active_webhooks_for_event", broken)
        service = make_service(Recorder(200), sleeps)

        summary = await service.trigger(tenant_id, "booking.created", {})

        assert summary == {"success": False, "error": "database is gone", "graceful_fail": True}


class TestManagement:
    def test_create_generates_a_64_char_hex_secret(self, tenant_id, sleeps):
        service = make_service(Recorder(200), sleeps)

        first = subscribe(service, tenant_id)
        second = subscribe(service, tenant_id)

        assert len(first.secret) == 64
        int(first.secret, 16)
        assert first.secret != second.secret

    @pytest.mark.asyncio
    async def test_test_delivery_uses_the_test_payload(self, tenant_id, sleeps):
        recorder = Recorder(200)
        service = make_service(recorder, sleeps)
        webhook = subscribe(service, tenant_id)

        result = await service.test(tenant_id, webhook.id)

        assert result["success"] is True
        assert result["message"] == "Webhook test successful"
        assert result["attempts"] == 1
        [request] = recorder.requests
        body = json.loads(request.content)
        assert body["event"] == "webhook.test"
        assert body["data"] == {"message": "This is a test webhook"}
        assert request.headers["X-Webhook-Event"] == "webhook.test"

    @pytest.mark.asyncio
    async def test_test_unknown_webhook(self, tenant_id, sleeps):
        service = make_service(Recorder(200), sleeps)

        assert await service.test(tenant_id, uuid4()) == {"success": False, "error": "Webhook not found"}

    @pytest.mark.asyncio
    async def test_delete_and_deliveries_are_tenant_scoped(self, tenant_id, sleeps):
        service = make_service(Recorder(200), sleeps)
        webhook = subscribe(service, tenant_id)
        await service.deliver(webhook, "booking.created", {})

        assert len(service.list_deliveries(tenant_id, webhook.id)) == 1
        assert service.list_deliveries(uuid4(), webhook.id) == []
        assert service.delete(uuid4(), webhook.id) is False
        assert service.delete(tenant_id, webhook.id) is True
        assert service.get(tenant_id, webhook.id) is None
        assert service.list(tenant_id) == []
