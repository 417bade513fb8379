"""Session orchestration: webhook fan-out, tracking and task cleanup."""
import json

import pytest

from checkout_payments.core.models import SessionStatus
from checkout_payments.core.scheduling import ScheduledTask
from checkout_payments.core.service import CheckoutService
from checkout_payments.core.tracker import ConfirmationState, TrackingResult
from checkout_payments.core.webhooks import SIGNATURE_HEADER, WebhookDispatcher, verify_signature

from conftest import FakeResponse

HOOK = "https://shop.example/hook"


class FakeTracker:
    """Hands back idle tasks and lets the test deliver the outcome."""

    def __init__(self) -> None:
        self.callbacks = {}
        self.tasks = []

    def track(self, signature, on_result):
        self.callbacks[signature] = on_result
        task = ScheduledTask(lambda: True, 1.0, name=f"confirm-{signature}")
        self.tasks.append(task)
        return task

    def resolve(self, signature, state=ConfirmationState.CONFIRMED, timed_out=False):
        self.callbacks[signature](TrackingResult(signature, state, timed_out=timed_out))


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def service(store, fake_session, tracker) -> CheckoutService:
    fake_session.route("POST", HOOK, FakeResponse(200, {"ok": True}))
    return CheckoutService(
        store,
        tracker=tracker,
        dispatcher=WebhookDispatcher(session=fake_session),
        executor=lambda job: job(),
    )


def _create(service, merchant_wallet, **overrides):
    params = {
        "merchant_id": "merchant_1",
        "merchant_name": "Acme",
        "merchant_wallet": merchant_wallet,
        "amount": "25.00",
        "success_url": "https://shop.example/ok",
        "cancel_url": "https://shop.example/cancel",
        "webhook_url": HOOK,
    }
    params.update(overrides)
    return service.create_session(**params)


def _delivered_types(fake_session):
    return [json.loads(call["data"])["type"] for call in fake_session.calls if call["url"] == HOOK]


def test_create_registers_webhook_and_announces(service, fake_session, merchant_wallet):
    created = _create(service, merchant_wallet)

    assert created.webhook_created
    assert created.webhook.url == HOOK
    assert _delivered_types(fake_session) == ["payment.created"]
    call = fake_session.calls[0]
    assert verify_signature(call["data"], call["headers"][SIGNATURE_HEADER], created.webhook.secret)


def test_known_webhook_url_is_reused(service, merchant_wallet):
    first = _create(service, merchant_wallet)
    second = _create(service, merchant_wallet)
    assert not second.webhook_created
    assert second.webhook.id == first.webhook.id


def test_no_webhook_url_means_no_delivery(service, fake_session, merchant_wallet):
    created = _create(service, merchant_wallet, webhook_url=None)
    assert created.webhook is None
    assert fake_session.calls == []


def test_completion_is_delivered_once(service, fake_session, merchant_wallet, payer):
    session = _create(service, merchant_wallet).session
    service.complete(session.id, "sigA", str(payer.pubkey()))

    assert _delivered_types(fake_session) == ["payment.created", "payment.completed"]
    completed = json.loads(fake_session.calls[-1]["data"])
    assert completed["payment"]["txSignature"] == "sigA"
    assert all(result.ok for result in service.deliveries)


def test_submit_then_confirmation_completes(service, tracker, merchant_wallet, payer):
    session = _create(service, merchant_wallet).session

    record = service.submit(session.id, "sigA", str(payer.pubkey()))
    assert record.status is SessionStatus.PROCESSING
    assert len(service.tasks_for(session.id)) == 1

    tracker.resolve("sigA")

    assert service.get_session(session.id).status is SessionStatus.COMPLETED
    assert service.tasks_for(session.id) == []
    assert tracker.tasks[0].stopped


def test_timed_out_submission_fails_attempt(service, tracker, fake_session, merchant_wallet, payer):
    session = _create(service, merchant_wallet).session
    service.submit(session.id, "sigA", str(payer.pubkey()))

    tracker.resolve("sigA", ConfirmationState.FAILED, timed_out=True)

    record = service.get_session(session.id)
    assert record.status is SessionStatus.PENDING
    assert record.payments[0].failure_reason == "confirmation timeout"
    assert _delivered_types(fake_session)[-1] == "payment.failed"


def test_late_tracker_outcome_is_ignored(service, tracker, merchant_wallet, payer):
    session = _create(service, merchant_wallet).session
    service.submit(session.id, "sigA", str(payer.pubkey()))
    service.complete(session.id, "sigA")

    tracker.resolve("sigA")

    assert service.get_session(session.id).status is SessionStatus.COMPLETED


def test_cancel_stops_background_tasks(service, merchant_wallet):
    session = _create(service, merchant_wallet).session
    task = service.watch_expiry(session.id, interval=0.01)

    record = service.cancel(session.id)

    assert record.status is SessionStatus.CANCELLED
    assert task.stopped
    assert task.join(2.0)
    assert service.tasks_for(session.id) == []


def test_expiry_watch_fires_payment_expired(store, fake_session, clock, merchant_wallet):
    fake_session.route("POST", HOOK, FakeResponse(200, {}))
    service = CheckoutService(
        store,
        dispatcher=WebhookDispatcher(session=fake_session),
        executor=lambda job: job(),
    )
    session = _create(service, merchant_wallet, expires_in=60).session
    clock.advance(60)

    task = service.watch_expiry(session.id, interval=0.01)

    assert task.join(2.0)
    assert store.get(session.id).status is SessionStatus.EXPIRED
    assert _delivered_types(fake_session) == ["payment.created", "payment.expired"]


def test_failed_delivery_does_not_affect_session(store, fake_session, merchant_wallet, payer):
    service = CheckoutService(
        store,
        dispatcher=WebhookDispatcher(session=fake_session),
        executor=lambda job: job(),
    )
    session = _create(service, merchant_wallet).session
    record = service.complete(session.id, "sigA", str(payer.pubkey()))

    assert record.status is SessionStatus.COMPLETED
    assert [result.ok for result in service.deliveries] == [False, False]


def test_shutdown_stops_everything(service, merchant_wallet):
    first = _create(service, merchant_wallet).session
    second = _create(service, merchant_wallet).session
    tasks = [service.watch_expiry(first.id, 0.01), service.watch_expiry(second.id, 0.01)]

    service.shutdown()

    assert all(task.stopped for task in tasks)
    assert all(task.join(2.0) for task in tasks)


def test_new_session_prunes_old_terminal_ones(service, store, clock, merchant_wallet, payer):
    done = _create(service, merchant_wallet).session
    service.complete(done.id, "sigA", str(payer.pubkey()))
    clock.advance(86401)

    fresh = _create(service, merchant_wallet).session

    assert done.id not in store
    assert fresh.id in store


def test_delivery_history_is_bounded(store, fake_session, merchant_wallet):
    fake_session.route("POST", HOOK, FakeResponse(200, {}))
    service = CheckoutService(
        store,
        dispatcher=WebhookDispatcher(session=fake_session),
        executor=lambda job: job(),
        delivery_history=2,
    )
    for _ in range(3):
        _create(service, merchant_wallet)

    assert len(_delivered_types(fake_session)) == 3
    assert len(service.deliveries) == 2


def test_watching_a_missing_session_ends(service):
    task = service.watch_expiry("cs_missing", interval=0.01)
    assert task.join(2.0)
    assert not task.timed_out


def test_expiry_watch_gives_up_on_unsettled_submission(store, fake_session, clock, merchant_wallet, payer):
    fake_session.route("POST", HOOK, FakeResponse(200, {}))
    service = CheckoutService(
        store,
        dispatcher=WebhookDispatcher(session=fake_session),
        executor=lambda job: job(),
    )
    session = _create(service, merchant_wallet, expires_in=60).session
    service.submit(session.id, "sigA", str(payer.pubkey()))
    clock.advance(60)

    task = service.watch_expiry(session.id, interval=0.01)

    assert task.join(2.0)
    assert task.timed_out
    assert store.get(session.id).status is SessionStatus.PROCESSING
