from datetime import timedelta

import pytest

from auth.models import User
from errors import InvalidRequestError, NotFoundError, ProviderError
from payment.models import PaymentAttempt
from payment.services import ReconcileOutcome, ReconciliationEngine
from subscription.services import SubscriptionService

from conftest import NOW


@pytest.fixture
def reconciler(db_session, gateway, dispatcher, clock):
    return ReconciliationEngine(db_session, gateway, dispatcher, clock)


def _checkout(reconciler, user, plan="basic", amount=500):
    return reconciler.create_checkout(user.id, plan, amount, "0712345678").merchant_reference


def _attempt(db, reference):
    return db.query(PaymentAttempt).populate_existing().filter(PaymentAttempt.merchant_reference == reference).one()


def test_checkout_records_pending_attempt(reconciler, db_session, gateway, user):
    result = reconciler.create_checkout(user.id, "basic", 500, "0712345678")

    assert result.merchant_reference.startswith("ORDER-")
    assert result.checkout_url.endswith(result.merchant_reference)
    assert gateway.orders == [result.merchant_reference]
    attempt = _attempt(db_session, result.merchant_reference)
    assert attempt.status == "pending"
    assert attempt.amount == 500
    assert attempt.provider_tracking_id == f"TRK-{result.merchant_reference}"


def test_checkout_rejects_bad_input(reconciler, user):
    with pytest.raises(InvalidRequestError):
        reconciler.create_checkout(user.id, "gold", 500, None)
    with pytest.raises(InvalidRequestError):
        reconciler.create_checkout(user.id, "basic", 499, None)
    with pytest.raises(NotFoundError):
        reconciler.create_checkout(9999, "basic", 500, None)


def test_checkout_provider_failure_keeps_attempt_pending(reconciler, db_session, gateway, user):
    gateway.fail_orders = True
    with pytest.raises(ProviderError) as excinfo:
        reconciler.create_checkout(user.id, "basic", 500, None)

    reference = excinfo.value.reference
    assert reference is not None
    assert _attempt(db_session, reference).status == "pending"


def test_success_activates_subscription_and_promotes(reconciler, db_session, dispatcher, user):
    reference = _checkout(reconciler, user)

    result = reconciler.apply_provider_status(reference, "COMPLETED")

    assert result.outcome == ReconcileOutcome.APPLIED
    assert result.applied
    sub = SubscriptionService.get_subscription(user.id, db_session)
    assert sub.status == "active"
    assert sub.plan_name == "basic"
    assert sub.listings_allowed == 5
    assert sub.end_date == NOW + timedelta(days=30)
    assert sub.payment_id == _attempt(db_session, reference).id
    db_session.expire_all()
    assert db_session.get(User, user.id).role == "dealer"
    assert [(contact, kind) for contact, kind, _ in dispatcher.sent] == [(user.email, "payment_success")]


def test_duplicate_delivery_changes_nothing(reconciler, db_session, dispatcher, clock, user):
    reference = _checkout(reconciler, user)
    reconciler.apply_provider_status(reference, "COMPLETED")
    end_date = SubscriptionService.get_subscription(user.id, db_session).end_date

    clock.advance(hours=2)
    again = reconciler.apply_provider_status(reference, "COMPLETED")

    assert again.outcome == ReconcileOutcome.ALREADY_TERMINAL
    assert again.status == "success"
    assert SubscriptionService.get_subscription(user.id, db_session).end_date == end_date
    assert len(dispatcher.sent) == 1


def test_late_failure_cannot_undo_success(reconciler, db_session, gateway, user):
    reference = _checkout(reconciler, user)
    reconciler.apply_provider_status(reference, "COMPLETED", f"TRK-{reference}")
    gateway.statuses[f"TRK-{reference}"] = "FAILED"

    assert reconciler.apply_provider_status(reference, "FAILED").outcome == ReconcileOutcome.ALREADY_TERMINAL
    polled = reconciler.poll(reference)

    assert polled.status == "success"
    assert gateway.status_queries == []
    assert _attempt(db_session, reference).status == "success"
    assert SubscriptionService.get_subscription(user.id, db_session).status == "active"


def test_failure_leaves_subscription_alone(reconciler, db_session, dispatcher, user):
    reference = _checkout(reconciler, user)

    result = reconciler.apply_provider_status(reference, "CANCELLED")

    assert result.outcome == ReconcileOutcome.APPLIED
    assert result.status == "failed"
    assert SubscriptionService.get_subscription(user.id, db_session) is None
    db_session.expire_all()
    assert db_session.get(User, user.id).role == "user"
    assert [kind for _, kind, _ in dispatcher.sent] == ["payment_failed"]


def test_indeterminate_status_stays_pending(reconciler, db_session, dispatcher, user):
    reference = _checkout(reconciler, user)

    result = reconciler.apply_provider_status(reference, "PROCESSING")

    assert result.outcome == ReconcileOutcome.INDETERMINATE
    attempt = _attempt(db_session, reference)
    assert attempt.status == "pending"
    assert attempt.provider_status == "PROCESSING"
    assert dispatcher.sent == []


def test_notification_without_status_queries_provider(reconciler, gateway, user):
    reference = _checkout(reconciler, user)
    gateway.statuses[f"TRK-{reference}"] = "Completed"

    result = reconciler.handle_notification(reference, f"TRK-{reference}")

    assert result.outcome == ReconcileOutcome.APPLIED
    assert gateway.status_queries == [f"TRK-{reference}"]

    again = reconciler.handle_notification(reference, f"TRK-{reference}")
    assert again.outcome == ReconcileOutcome.ALREADY_TERMINAL
    assert gateway.status_queries == [f"TRK-{reference}"]


def test_unknown_reference_is_not_found(reconciler):
    with pytest.raises(NotFoundError):
        reconciler.apply_provider_status("ORDER-UNKNOWN", "COMPLETED")


def test_poll_provider_failure_keeps_pending(reconciler, gateway, user):
    reference = _checkout(reconciler, user)
    gateway.fail_status = True

    result = reconciler.poll(reference)

    assert result.outcome == ReconcileOutcome.INDETERMINATE
    assert result.status == "pending"


def test_poll_settles_from_provider(reconciler, gateway, user):
    reference = _checkout(reconciler, user)
    gateway.statuses[f"TRK-{reference}"] = "COMPLETED"

    assert reconciler.poll(reference).outcome == ReconcileOutcome.APPLIED


def test_concurrent_writer_wins_compare_and_set(reconciler, db_session, session_factory, gateway, dispatcher, clock, user, monkeypatch):
    reference = _checkout(reconciler, user)
    other_session = session_factory()
    other = ReconciliationEngine(other_session, gateway, dispatcher, clock)
    real_get_attempt = reconciler.ledger.get_attempt
    reads = []

    def stale_then_fresh(ref):
        reads.append(ref)
        if len(reads) == 1:
            # snapshot taken before the other writer committed
            stale = PaymentAttempt(merchant_reference=ref, subject_id=user.id, plan_name="basic", amount=500, currency="KES", status="pending")
            assert other.apply_provider_status(ref, "COMPLETED").applied
            return stale
        return real_get_attempt(ref)

    monkeypatch.setattr(reconciler.ledger, "get_attempt", stale_then_fresh)
    result = reconciler.apply_provider_status(reference, "FAILED")

    assert result.outcome == ReconcileOutcome.CONFLICT
    assert result.status == "success"
    assert [kind for _, kind, _ in dispatcher.sent] == ["payment_success"]
    assert SubscriptionService.get_subscription(user.id, db_session).status == "active"
    other_session.close()


def test_admin_payment_keeps_admin_role(reconciler, db_session, admin_user):
    reference = _checkout(reconciler, admin_user, plan="premium", amount=1500)
    reconciler.apply_provider_status(reference, "COMPLETED")

    db_session.expire_all()
    assert db_session.get(User, admin_user.id).role == "admin"
    sub = SubscriptionService.get_subscription(admin_user.id, db_session)
    assert sub.listings_allowed is None
    assert sub.end_date == NOW + timedelta(days=60)


def test_payment_history_newest_first(reconciler, clock, user):
    first = _checkout(reconciler, user)
    clock.advance(minutes=5)
    second = _checkout(reconciler, user, plan="advanced", amount=1250)

    history = reconciler.payment_history(user.id)
    assert [p.merchant_reference for p in history] == [second, first]


def test_notification_prefers_stored_tracking_id(reconciler, gateway, user):
    basic = _checkout(reconciler, user)
    premium = _checkout(reconciler, user, plan="premium", amount=1500)
    gateway.statuses[f"TRK-{basic}"] = "COMPLETED"

    result = reconciler.handle_notification(premium, f"TRK-{basic}")

    assert result.outcome == ReconcileOutcome.INDETERMINATE
    assert result.status == "pending"
    assert gateway.status_queries == [f"TRK-{premium}"]


def test_status_for_another_order_is_ignored(reconciler, db_session, gateway, user):
    basic = _checkout(reconciler, user)
    premium = _checkout(reconciler, user, plan="premium", amount=1500)
    # premium never got a tracking id back from checkout
    db_session.query(PaymentAttempt).filter(PaymentAttempt.merchant_reference == premium).update(
        {"provider_tracking_id": None}, synchronize_session=False
    )
    db_session.commit()
    gateway.statuses[f"TRK-{basic}"] = "COMPLETED"

    result = reconciler.handle_notification(premium, f"TRK-{basic}", "COMPLETED")

    assert result.outcome == ReconcileOutcome.INDETERMINATE
    attempt = _attempt(db_session, premium)
    assert attempt.status == "pending"
    assert attempt.provider_tracking_id is None
    assert SubscriptionService.get_subscription(user.id, db_session) is None


def test_untracked_attempt_settles_when_provider_names_it(reconciler, db_session, gateway, user):
    reference = _checkout(reconciler, user)
    db_session.query(PaymentAttempt).filter(PaymentAttempt.merchant_reference == reference).update(
        {"provider_tracking_id": None}, synchronize_session=False
    )
    db_session.commit()
    gateway.statuses[f"TRK-{reference}"] = "COMPLETED"

    result = reconciler.handle_notification(reference, f"TRK-{reference}")

    assert result.outcome == ReconcileOutcome.APPLIED
    assert _attempt(db_session, reference).provider_tracking_id == f"TRK-{reference}"


def test_notification_status_is_confirmed_with_provider(reconciler, db_session, gateway, dispatcher, user):
    reference = _checkout(reconciler, user)

    result = reconciler.handle_notification(reference, None, "COMPLETED")

    assert result.outcome == ReconcileOutcome.INDETERMINATE
    assert gateway.status_queries == [f"TRK-{reference}"]
    assert _attempt(db_session, reference).status == "pending"
    assert dispatcher.sent == []
