import datetime
import json

import pytest

from booking_service import expiry_sweeper, models
from booking_service.errors import PaymentOperationFailed

from .conftest import NOW

LATER = NOW + datetime.timedelta(days=7)


def test_overdue_hold_is_expired_and_released(db_session, make_listing, make_booking, authorizer):
    booking = make_booking(make_listing(), hold_expires_at=NOW + datetime.timedelta(days=6))

    summary = expiry_sweeper.sweep(db_session, authorizer, now=LATER)

    assert summary.processed == 1
    assert summary.errors == []
    db_session.refresh(booking)
    assert booking.status == models.BookingStatus.CANCELLED
    assert booking.hold_status == models.HoldStatus.EXPIRED
    assert booking.payment_status == models.PaymentStatus.RELEASED
    assert booking.cancellation_reason
    assert authorizer.calls == [("release", booking.payment_intent_id)]


def test_hold_not_yet_due_is_left_alone(db_session, make_listing, make_booking, authorizer):
    booking = make_booking(make_listing(), hold_expires_at=LATER)

    summary = expiry_sweeper.sweep(db_session, authorizer, now=LATER)

    assert summary.processed == 0
    assert authorizer.calls == []
    db_session.refresh(booking)
    assert booking.status == models.BookingStatus.PENDING


def test_second_sweep_finds_nothing(db_session, make_listing, make_booking, authorizer):
    listing = make_listing()
    make_booking(listing, hold_expires_at=NOW)
    make_booking(listing, hold_expires_at=NOW + datetime.timedelta(days=1))

    first = expiry_sweeper.sweep(db_session, authorizer, now=LATER)
    second = expiry_sweeper.sweep(db_session, authorizer, now=LATER)

    assert first.processed == 2
    assert second.processed == 0
    assert second.skipped == 0
    assert len(authorizer.calls_of("release")) == 2


def test_resolved_bookings_are_never_swept(db_session, make_listing, make_booking, authorizer):
    listing = make_listing()
    make_booking(
        listing, hold_expires_at=NOW,
        status=models.BookingStatus.APPROVED,
        hold_status=models.HoldStatus.CAPTURED,
        payment_status=models.PaymentStatus.PAID,
    )
    make_booking(
        listing, hold_expires_at=NOW,
        status=models.BookingStatus.DECLINED,
        hold_status=models.HoldStatus.RELEASED,
        payment_status=models.PaymentStatus.RELEASED,
    )

    summary = expiry_sweeper.sweep(db_session, authorizer, now=LATER)

    assert summary.processed == 0
    assert authorizer.calls == []


def test_one_failing_booking_does_not_stop_the_sweep(db_session, make_listing, make_booking, authorizer, mocker):
    listing = make_listing()
    broken = make_booking(listing, hold_expires_at=NOW)
    healthy = make_booking(listing, hold_expires_at=NOW + datetime.timedelta(hours=1))
    real_release = authorizer.release

    def flaky_release(payment_intent_id, *, idempotency_key=None):
        if payment_intent_id == broken.payment_intent_id:
            raise PaymentOperationFailed("provider timeout")
        return real_release(payment_intent_id, idempotency_key=idempotency_key)

    mocker.patch.object(authorizer, "release", side_effect=flaky_release)

    summary = expiry_sweeper.sweep(db_session, authorizer, now=LATER)

    assert summary.processed == 1
    assert summary.errors == [{"booking_id": broken.id, "error": "provider timeout"}]
    db_session.refresh(broken)
    db_session.refresh(healthy)
    assert broken.status == models.BookingStatus.PENDING
    assert broken.hold_status == models.HoldStatus.HELD
    assert healthy.hold_status == models.HoldStatus.EXPIRED


def test_captured_hold_is_recorded_as_approved(db_session, make_listing, make_booking, authorizer):
    booking = make_booking(make_listing(), hold_expires_at=NOW)
    authorizer.intents[booking.payment_intent_id] = "succeeded"

    summary = expiry_sweeper.sweep(db_session, authorizer, now=LATER)

    assert summary.processed == 0
    assert summary.skipped == 1
    db_session.refresh(booking)
    assert booking.status == models.BookingStatus.APPROVED
    assert booking.hold_status == models.HoldStatus.CAPTURED
    assert booking.payment_status == models.PaymentStatus.PAID
    assert authorizer.keys == [("release", f"release_{booking.payment_intent_id}")]

    payload = json.loads(db_session.query(models.OutboxEvent).one().payload)
    assert payload["event_type"] == "booking_approved"
    assert payload["booking_id"] == booking.id
    assert sorted(payload["recipients"]) == sorted([booking.renter_id, booking.host_id])


def test_expiry_notifies_both_parties(db_session, make_listing, make_booking, authorizer):
    booking = make_booking(make_listing(), hold_expires_at=NOW)

    expiry_sweeper.sweep(db_session, authorizer, now=LATER)

    event = db_session.query(models.OutboxEvent).order_by(models.OutboxEvent.id.desc()).first()
    payload = json.loads(event.payload)
    assert payload["event_type"] == "hold_expired"
    assert payload["booking_id"] == booking.id
    assert sorted(payload["recipients"]) == sorted([booking.renter_id, booking.host_id])


def test_expire_hold_loses_to_host_response(db_session, make_listing, make_booking, authorizer, mocker):
    """A host approval lands between the release call and the sweeper's write."""
    booking = make_booking(make_listing(), hold_expires_at=NOW)
    real_release = authorizer.release

    def release_then_host_approves(payment_intent_id, *, idempotency_key=None):
        outcome = real_release(payment_intent_id, idempotency_key=idempotency_key)
        db_session.query(models.BookingRequest).filter(models.BookingRequest.id == booking.id).update(
            {"status": models.BookingStatus.APPROVED, "hold_status": models.HoldStatus.CAPTURED},
            synchronize_session=False,
        )
        db_session.commit()
        return outcome

    mocker.patch.object(authorizer, "release", side_effect=release_then_host_approves)

    assert expiry_sweeper.expire_hold(db_session, authorizer, booking, LATER) is False
    db_session.refresh(booking)
    assert booking.status == models.BookingStatus.APPROVED


@pytest.mark.parametrize("intent_status", ["canceled", None])
def test_hold_already_gone_at_provider_still_expires(db_session, make_listing, make_booking, authorizer, intent_status):
    booking = make_booking(make_listing(), hold_expires_at=NOW)
    if intent_status:
        authorizer.intents[booking.payment_intent_id] = intent_status
    else:
        booking.payment_intent_id = None
        db_session.commit()

    assert expiry_sweeper.expire_hold(db_session, authorizer, booking, LATER) is True
    db_session.refresh(booking)
    assert booking.hold_status == models.HoldStatus.EXPIRED


def test_reconcile_that_loses_race_sends_no_approval(db_session, make_listing, make_booking, authorizer, mocker):
    booking = make_booking(make_listing(), hold_expires_at=NOW)
    authorizer.intents[booking.payment_intent_id] = "succeeded"
    mocker.patch.object(expiry_sweeper.crud, "transition_held_booking", return_value=False)

    assert expiry_sweeper.expire_hold(db_session, authorizer, booking, LATER) is False
    assert db_session.query(models.OutboxEvent).count() == 0


# --- host reminders ---

def hours_ago(n):
    return NOW - datetime.timedelta(hours=n)


def reminder_payloads(db_session):
    events = db_session.query(models.OutboxEvent).order_by(models.OutboxEvent.id).all()
    payloads = [json.loads(e.payload) for e in events]
    return [p for p in payloads if p["event_type"] == "booking_reminder"]


def test_hosts_are_reminded_once_about_waiting_requests(db_session, make_listing, make_booking):
    first_host = make_listing()
    second_host = make_listing(host_id=20)

    waiting = make_booking(first_host, created_at=hours_ago(2))
    nudged_long_ago = make_booking(first_host, created_at=hours_ago(3), host_nudge_sent_at=hours_ago(2))
    just_nudged = make_booking(
        first_host, created_at=hours_ago(3), host_nudge_sent_at=NOW - datetime.timedelta(minutes=30)
    )
    too_fresh = make_booking(first_host, created_at=NOW - datetime.timedelta(minutes=30))
    too_old = make_booking(first_host, created_at=hours_ago(25))
    make_booking(
        first_host, created_at=hours_ago(2),
        status=models.BookingStatus.APPROVED,
        hold_status=models.HoldStatus.CAPTURED,
        payment_status=models.PaymentStatus.PAID,
    )
    other_host_waiting = make_booking(second_host, created_at=NOW - datetime.timedelta(minutes=90))

    assert expiry_sweeper.remind_pending_hosts(db_session, now=NOW) == 2

    payloads = {p["recipients"][0]: p for p in reminder_payloads(db_session)}
    assert set(payloads) == {10, 20}
    assert sorted(payloads[10]["booking_ids"]) == sorted([waiting.id, nudged_long_ago.id])
    assert payloads[10]["pending_count"] == 2
    assert payloads[20]["booking_ids"] == [other_host_waiting.id]

    for booking in (waiting, nudged_long_ago, other_host_waiting):
        db_session.refresh(booking)
        assert booking.host_nudge_sent_at == NOW
    for booking in (too_fresh, too_old):
        db_session.refresh(booking)
        assert booking.host_nudge_sent_at is None
    db_session.refresh(just_nudged)
    assert just_nudged.host_nudge_sent_at == NOW - datetime.timedelta(minutes=30)


def test_reminders_repeat_at_most_hourly(db_session, make_listing, make_booking):
    make_booking(make_listing(), created_at=NOW - datetime.timedelta(hours=2))

    assert expiry_sweeper.remind_pending_hosts(db_session, now=NOW) == 1
    assert expiry_sweeper.remind_pending_hosts(db_session, now=NOW + datetime.timedelta(minutes=30)) == 0
    assert expiry_sweeper.remind_pending_hosts(db_session, now=NOW + datetime.timedelta(minutes=61)) == 1
    assert len(reminder_payloads(db_session)) == 2


def test_unqueued_reminder_is_retried_next_run(db_session, make_listing, make_booking, mocker):
    booking = make_booking(make_listing(), created_at=NOW - datetime.timedelta(hours=2))
    mocker.patch.object(expiry_sweeper, "notify", return_value=False)

    assert expiry_sweeper.remind_pending_hosts(db_session, now=NOW) == 0
    db_session.refresh(booking)
    assert booking.host_nudge_sent_at is None
