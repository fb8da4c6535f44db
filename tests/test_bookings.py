from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select
from redis.exceptions import LockNotOwnedError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from stay_booking import bookings, notifications
from stay_booking.bookings import (
    ALLOWED_TRANSITIONS,
    ActorRelation,
    authorize_transition,
    change_booking_status,
    create_booking,
    delete_booking,
    get_booking_for_user,
    list_bookings_for_user,
    resolve_actor_relations,
    update_booking,
)
from stay_booking.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from stay_booking.models import Booking, BookingStatus, Notification, PaymentStatus
from stay_booking.schemas import BookingCreateRequest, BookingUpdateRequest

from conftest import TODAY, FakeLock, current, make_booking


def booking_request(prop, check_in, check_out, guests=2, **kwargs):
    return BookingCreateRequest(
        property_id=prop.id,
        check_in_date=check_in,
        check_out_date=check_out,
        number_of_guests=guests,
        **kwargs,
    )


async def notifications_for(db, user):
    result = await db.execute(select(Notification).where(Notification.user_id == user.id))
    return list(result.scalars().all())


# =============================================================================
# CREATION
# =============================================================================

async def test_create_booking_prices_stay_and_opens_payment(db, listing, guest):
    booking = await create_booking(
        db,
        current(guest),
        booking_request(listing, date(2024, 3, 1), date(2024, 3, 4), special_requests="Late arrival"),
        today=TODAY,
    )

    assert booking.status == BookingStatus.PENDING.value
    assert booking.total_price == Decimal("330.00")
    assert booking.num_nights == 3
    assert booking.special_requests == "Late arrival"
    assert len(booking.payments) == 1
    assert booking.payments[0].status == PaymentStatus.PENDING.value
    assert booking.payments[0].amount == Decimal("330.00")
    assert booking.payments[0].currency == "USD"


async def test_overlapping_request_is_rejected(db, listing, guest, other_guest):
    await create_booking(
        db, current(guest), booking_request(listing, date(2024, 3, 1), date(2024, 3, 4)), today=TODAY
    )

    with pytest.raises(ConflictError):
        await create_booking(
            db,
            current(other_guest),
            booking_request(listing, date(2024, 3, 2), date(2024, 3, 3)),
            today=TODAY,
        )

    count = len((await db.execute(select(Booking))).scalars().all())
    assert count == 1


async def test_back_to_back_stays_are_both_accepted(db, listing, guest, other_guest):
    await create_booking(
        db, current(guest), booking_request(listing, date(2024, 1, 10), date(2024, 1, 13)), today=TODAY
    )
    second = await create_booking(
        db,
        current(other_guest),
        booking_request(listing, date(2024, 1, 13), date(2024, 1, 15)),
        today=TODAY,
    )
    assert second.total_price == Decimal("230.00")


async def test_too_many_guests(db, listing, guest):
    with pytest.raises(ValidationError, match="Maximum number of guests allowed is 4"):
        await create_booking(
            db, current(guest), booking_request(listing, date(2024, 3, 1), date(2024, 3, 4), guests=5),
            today=TODAY,
        )


async def test_unpublished_property_cannot_be_booked(db, listing, guest):
    listing.is_published = False
    await db.commit()

    with pytest.raises(ValidationError):
        await create_booking(
            db, current(guest), booking_request(listing, date(2024, 3, 1), date(2024, 3, 4)), today=TODAY
        )


async def test_check_in_in_the_past(db, listing, guest):
    with pytest.raises(ValidationError):
        await create_booking(
            db, current(guest), booking_request(listing, date(2024, 3, 1), date(2024, 3, 4)),
            today=date(2024, 3, 2),
        )


async def test_unknown_property(db, listing, guest):
    request = booking_request(listing, date(2024, 3, 1), date(2024, 3, 4))
    request.property_id = guest.id

    with pytest.raises(NotFoundError):
        await create_booking(db, current(guest), request, today=TODAY)


async def test_busy_lock_is_a_conflict(db, listing, guest, fake_redis):
    fake_redis.locks.add(f"booking:lock:{listing.id}")

    with pytest.raises(ConflictError) as exc_info:
        await create_booking(
            db, current(guest), booking_request(listing, date(2024, 3, 1), date(2024, 3, 4)),
            redis=fake_redis, today=TODAY,
        )
    assert exc_info.value.details["reason"] == "lock_busy"


async def test_lock_released_after_booking(db, listing, guest, fake_redis):
    await create_booking(
        db, current(guest), booking_request(listing, date(2024, 3, 1), date(2024, 3, 4)),
        redis=fake_redis, today=TODAY,
    )
    assert fake_redis.locks == set()


async def test_expired_lock_does_not_fail_committed_booking(db, listing, guest, fake_redis, monkeypatch):
    async def release_after_expiry(self):
        self.redis.locks.discard(self.name)
        raise LockNotOwnedError("Cannot release a lock that's no longer owned")

    monkeypatch.setattr(FakeLock, "release", release_after_expiry)

    booking = await create_booking(
        db, current(guest), booking_request(listing, date(2024, 3, 1), date(2024, 3, 4)),
        redis=fake_redis, today=TODAY,
    )

    assert booking.status == BookingStatus.PENDING.value
    assert len((await db.execute(select(Booking))).scalars().all()) == 1


async def test_overlap_constraint_violation_is_a_conflict(db, listing, guest, monkeypatch):
    async def commit_fails():
        raise IntegrityError("INSERT INTO bookings", {}, Exception("bookings_no_overlap"))

    monkeypatch.setattr(db, "commit", commit_fails)

    with pytest.raises(ConflictError) as exc_info:
        await create_booking(
            db, current(guest), booking_request(listing, date(2024, 3, 1), date(2024, 3, 4)), today=TODAY
        )
    assert exc_info.value.details["reason"] == "dates_booked"


# =============================================================================
# TRANSITION TABLE
# =============================================================================

async def test_actor_relations(listing, guest, host, manager, admin, other_guest):
    booking = Booking(property=listing, guest_id=guest.id)

    assert resolve_actor_relations(current(guest), booking) == {ActorRelation.GUEST}
    assert resolve_actor_relations(current(host), booking) == {ActorRelation.OWNER}
    assert resolve_actor_relations(current(manager), booking) == {ActorRelation.MANAGER}
    assert resolve_actor_relations(current(admin), booking) == {ActorRelation.ADMIN}
    assert resolve_actor_relations(current(other_guest), booking) == frozenset()


def test_no_transitions_leave_terminal_states():
    terminal = {BookingStatus.CANCELLED, BookingStatus.COMPLETED, BookingStatus.REJECTED}
    assert not [pair for pair in ALLOWED_TRANSITIONS if pair[0] in terminal]


def test_hosts_cannot_cancel_confirmed_booking():
    allowed = ALLOWED_TRANSITIONS[(BookingStatus.CONFIRMED, BookingStatus.CANCELLED)]
    assert ActorRelation.OWNER not in allowed
    assert ActorRelation.MANAGER not in allowed


ALL_RELATIONS = list(ActorRelation)


@pytest.mark.parametrize("current_status", list(BookingStatus))
@pytest.mark.parametrize("target", list(BookingStatus))
@pytest.mark.parametrize("relation", ALL_RELATIONS)
def test_only_listed_transitions_are_authorized(current_status, target, relation):
    booking = Booking(
        status=current_status.value,
        check_in_date=date(2024, 1, 10),
        check_out_date=date(2024, 1, 13),
    )
    allowed = ALLOWED_TRANSITIONS.get((current_status, target))

    if allowed is not None and relation in allowed:
        authorize_transition(booking, target, frozenset({relation}), today=date(2024, 1, 13))
    else:
        with pytest.raises((InvalidTransitionError, AuthorizationError)):
            authorize_transition(booking, target, frozenset({relation}), today=date(2024, 1, 13))


def test_unrelated_caller_is_forbidden_before_state_is_checked():
    booking = Booking(status=BookingStatus.COMPLETED.value)

    with pytest.raises(AuthorizationError):
        authorize_transition(booking, BookingStatus.CONFIRMED, frozenset())


def test_state_is_checked_before_role():
    booking = Booking(status=BookingStatus.CANCELLED.value)

    with pytest.raises(InvalidTransitionError):
        authorize_transition(booking, BookingStatus.CONFIRMED, frozenset({ActorRelation.GUEST}))


@pytest.mark.parametrize("today, allowed", [
    (date(2024, 1, 12), False),
    (date(2024, 1, 13), True),
    (date(2024, 1, 20), True),
])
def test_completion_waits_for_checkout(today, allowed):
    booking = Booking(
        status=BookingStatus.CONFIRMED.value,
        check_in_date=date(2024, 1, 10),
        check_out_date=date(2024, 1, 13),
    )
    relations = frozenset({ActorRelation.OWNER})

    if allowed:
        authorize_transition(booking, BookingStatus.COMPLETED, relations, today=today)
    else:
        with pytest.raises(InvalidTransitionError, match="before check-out date"):
            authorize_transition(booking, BookingStatus.COMPLETED, relations, today=today)


# =============================================================================
# STATUS CHANGES
# =============================================================================

async def test_host_confirms_and_guest_is_notified(db, listing, guest, host):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    change = await change_booking_status(db, current(host), booking.id, BookingStatus.CONFIRMED)

    assert change.booking.status == BookingStatus.CONFIRMED.value
    guest_notes = await notifications_for(db, guest)
    assert [n.type for n in guest_notes] == ["BOOKING_UPDATE"]
    assert guest_notes[0].data["status"] == "CONFIRMED"
    assert await notifications_for(db, host) == []
    assert change.notification_ids == [guest_notes[0].id]


async def test_manager_confirms(db, listing, guest, manager):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    change = await change_booking_status(db, current(manager), booking.id, BookingStatus.CONFIRMED)

    assert change.booking.status == BookingStatus.CONFIRMED.value


async def test_guest_cannot_confirm_own_booking(db, listing, guest):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    with pytest.raises(AuthorizationError):
        await change_booking_status(db, current(guest), booking.id, BookingStatus.CONFIRMED)

    assert booking.status == BookingStatus.PENDING.value
    assert await notifications_for(db, guest) == []


async def test_host_cannot_cancel_confirmed_booking(db, listing, guest, host):
    booking = await make_booking(
        db, listing, guest, date(2024, 1, 10), date(2024, 1, 13), status=BookingStatus.CONFIRMED
    )

    with pytest.raises(AuthorizationError):
        await change_booking_status(db, current(host), booking.id, BookingStatus.CANCELLED)

    assert booking.status == BookingStatus.CONFIRMED.value


async def test_stranger_cannot_touch_booking(db, listing, guest, other_guest):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    with pytest.raises(AuthorizationError):
        await change_booking_status(db, current(other_guest), booking.id, BookingStatus.CANCELLED)


@pytest.mark.parametrize("terminal", [
    BookingStatus.CANCELLED,
    BookingStatus.COMPLETED,
    BookingStatus.REJECTED,
])
@pytest.mark.parametrize("target", list(BookingStatus))
async def test_terminal_states_are_final(db, listing, guest, admin, terminal, target):
    booking = await make_booking(
        db, listing, guest, date(2024, 1, 10), date(2024, 1, 13), status=terminal
    )

    with pytest.raises(InvalidTransitionError):
        await change_booking_status(db, current(admin), booking.id, target, today=date(2024, 2, 1))

    assert booking.status == terminal.value


async def test_complete_after_checkout(db, listing, guest, host):
    booking = await make_booking(
        db, listing, guest, date(2024, 1, 10), date(2024, 1, 13), status=BookingStatus.CONFIRMED
    )

    with pytest.raises(InvalidTransitionError):
        await change_booking_status(
            db, current(host), booking.id, BookingStatus.COMPLETED, today=date(2024, 1, 12)
        )

    change = await change_booking_status(
        db, current(host), booking.id, BookingStatus.COMPLETED, today=date(2024, 1, 13)
    )
    assert change.booking.status == BookingStatus.COMPLETED.value


async def test_cancellation_refunds_payments(db, listing, guest, host):
    booking = await make_booking(
        db, listing, guest, date(2024, 1, 10), date(2024, 1, 13),
        status=BookingStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED,
    )

    change = await change_booking_status(db, current(guest), booking.id, BookingStatus.CANCELLED)

    assert change.booking.status == BookingStatus.CANCELLED.value
    assert [p.status for p in change.booking.payments] == [PaymentStatus.REFUNDED.value]

    host_notes = await notifications_for(db, host)
    assert [n.data["status"] for n in host_notes] == ["CANCELLED"]
    guest_notes = await notifications_for(db, guest)
    assert [n.type for n in guest_notes] == ["PAYMENT_UPDATE"]
    assert len(change.notifications) == 2


async def test_failed_payments_are_not_refunded(db, listing, guest):
    booking = await make_booking(
        db, listing, guest, date(2024, 1, 10), date(2024, 1, 13),
        payment_status=PaymentStatus.FAILED,
    )

    change = await change_booking_status(db, current(guest), booking.id, BookingStatus.CANCELLED)

    assert [p.status for p in change.booking.payments] == [PaymentStatus.FAILED.value]


async def test_stripe_refund_failure_does_not_block_cancellation(db, listing, guest, monkeypatch):
    booking = await make_booking(
        db, listing, guest, date(2024, 1, 10), date(2024, 1, 13),
        status=BookingStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED,
        transaction_id="pi_123",
    )

    def refund_fails(payment):
        raise PaymentError("Refund failed: card_declined")

    monkeypatch.setattr(bookings, "release_payment", refund_fails)

    change = await change_booking_status(db, current(guest), booking.id, BookingStatus.CANCELLED)

    assert change.booking.status == BookingStatus.CANCELLED.value
    assert change.booking.payments[0].status == PaymentStatus.REFUNDED.value


async def test_admin_change_notifies_guest_and_host(db, listing, guest, host, admin):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    await change_booking_status(db, current(admin), booking.id, BookingStatus.REJECTED)

    assert len(await notifications_for(db, guest)) == 1
    assert len(await notifications_for(db, host)) == 1


async def test_notification_failure_does_not_block_transition(db, listing, guest, host, monkeypatch):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    def broken(*args, **kwargs):
        raise RuntimeError("template error")

    monkeypatch.setattr(notifications, "build_booking_status_notifications", broken)

    change = await change_booking_status(db, current(host), booking.id, BookingStatus.CONFIRMED)

    assert change.booking.status == BookingStatus.CONFIRMED.value
    assert change.notifications == []
    assert await notifications_for(db, guest) == []


async def test_notification_write_failure_is_rolled_back_alone(db, listing, guest, host, monkeypatch):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    def add_all_fails(instances):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(db, "add_all", add_all_fails)

    change = await change_booking_status(db, current(host), booking.id, BookingStatus.CONFIRMED)

    assert change.notifications == []
    stored = await db.scalar(select(Booking.status).where(Booking.id == booking.id))
    assert stored == BookingStatus.CONFIRMED.value


# =============================================================================
# UPDATES, READS, DELETES
# =============================================================================

async def test_guest_edits_special_requests(db, listing, guest):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    change = await update_booking(
        db, current(guest), booking.id, BookingUpdateRequest(special_requests="Crib please")
    )

    assert change.booking.special_requests == "Crib please"
    assert change.notifications == []


async def test_host_cannot_edit_special_requests(db, listing, guest, host):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    with pytest.raises(ValidationError, match="No valid updates provided"):
        await update_booking(
            db, current(host), booking.id, BookingUpdateRequest(special_requests="Nope")
        )


async def test_update_with_status(db, listing, guest, host):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    change = await update_booking(
        db, current(host), booking.id, BookingUpdateRequest(status=BookingStatus.REJECTED)
    )

    assert change.booking.status == BookingStatus.REJECTED.value
    assert len(change.notifications) == 1


async def test_booking_visibility(db, listing, guest, host, manager, admin, other_guest):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    for user in (guest, host, manager, admin):
        assert (await get_booking_for_user(db, current(user), booking.id)).id == booking.id

    with pytest.raises(AuthorizationError):
        await get_booking_for_user(db, current(other_guest), booking.id)


async def test_list_bookings_scoped_to_caller(db, listing, guest, host, manager, admin, other_guest):
    await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))
    await make_booking(
        db, listing, other_guest, date(2024, 1, 20), date(2024, 1, 22), status=BookingStatus.CONFIRMED
    )

    assert (await list_bookings_for_user(db, current(guest)))[1] == 1
    assert (await list_bookings_for_user(db, current(other_guest)))[1] == 1
    assert (await list_bookings_for_user(db, current(host)))[1] == 2
    assert (await list_bookings_for_user(db, current(manager)))[1] == 2
    assert (await list_bookings_for_user(db, current(admin)))[1] == 2

    confirmed, total = await list_bookings_for_user(
        db, current(host), status=BookingStatus.CONFIRMED
    )
    assert total == 1
    assert confirmed[0].guest_id == other_guest.id

    page, total = await list_bookings_for_user(db, current(admin), page=2, limit=1)
    assert total == 2
    assert len(page) == 1


async def test_only_admin_deletes(db, listing, guest, host, admin):
    booking = await make_booking(db, listing, guest, date(2024, 1, 10), date(2024, 1, 13))

    with pytest.raises(AuthorizationError):
        await delete_booking(db, current(host), booking.id)

    await delete_booking(db, current(admin), booking.id)

    with pytest.raises(NotFoundError):
        await get_booking_for_user(db, current(admin), booking.id)