"""
Booking conflict checking, the booking authorization gate and the booking
status machine.

Windows are half-open: a booking covering [09:00, 10:00) does not collide
with one covering [10:00, 11:00).
"""

import datetime
import logging
import os
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .credentials import first_missing_credential
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .models import (
    MAX_BOOKING_MINUTES,
    MIN_BOOKING_MINUTES,
    OVERLAP_CONSTRAINT,
    Booking,
    Printer,
    User,
    to_utc,
    utcnow,
)
from .notifications import create_notification

logger = logging.getLogger(__name__)

# "admin": only administrators drive status transitions.
# "owner": booking owners may also drive transitions on their own bookings.
BOOKING_STATUS_AUTHORITY = os.getenv("BOOKING_STATUS_AUTHORITY", "admin")

BLOCKING_STATUSES = ("scheduled", "active", "completed")

ALLOWED_TRANSITIONS = {
    "scheduled": {"active", "cancelled"},
    "active": {"completed", "failed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
    "failed": set(),
}

CONFLICT_MESSAGE = "Time slot conflicts with existing booking"


# --- Conflict checking ---
def has_conflict(
    session: Session,
    printer_id: int,
    start_time: datetime.datetime,
    end_time: datetime.datetime,
    exclude_booking_id: Optional[int] = None,
) -> bool:
    query = (
        select(Booking.id)
        .where(Booking.printer_id == printer_id)
        .where(Booking.status.in_(BLOCKING_STATUSES))
        .where(Booking.end_time > to_utc(start_time))
        .where(Booking.start_time < to_utc(end_time))
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)
    return session.exec(query.limit(1)).first() is not None


def validate_window(
    start_time: datetime.datetime, end_time: datetime.datetime, duration: int
) -> None:
    if not MIN_BOOKING_MINUTES <= duration <= MAX_BOOKING_MINUTES:
        raise ValidationError(
            f"Duration must be between {MIN_BOOKING_MINUTES} and "
            f"{MAX_BOOKING_MINUTES} minutes"
        )
    if end_time <= start_time:
        raise ValidationError("End time must be after start time")
    window_minutes = (end_time - start_time).total_seconds() / 60
    if window_minutes != duration:
        raise ValidationError(
            f"Duration of {duration} minutes does not match the booked window "
            f"of {window_minutes:g} minutes"
        )


def lock_printer(session: Session, printer_id: int) -> Optional[Printer]:
    """
    Take the write lock for a printer inside the current transaction.

    A no-op UPDATE rather than SELECT ... FOR UPDATE: it row-locks on Postgres,
    and on SQLite, which ignores FOR UPDATE and only begins a transaction at
    the first write, it takes the database write lock. Returns None when the
    printer does not exist.
    """
    result = session.exec(
        update(Printer)
        .where(Printer.id == printer_id)
        .values(status=Printer.status)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return session.get(Printer, printer_id)


def is_overlap_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    diag = getattr(orig, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None) or ""
    return constraint_name == OVERLAP_CONSTRAINT or OVERLAP_CONSTRAINT in str(orig)


# --- Authorization gate ---
def submit_booking(
    session: Session,
    user_id: int,
    printer_id: int,
    start_time: datetime.datetime,
    end_time: datetime.datetime,
    duration: int,
    pla_confirmed: bool,
    notes: Optional[str] = None,
) -> Booking:
    """
    Accept or reject a booking request.

    Checks run in order and the first failure wins: window validation, PLA
    confirmation, required credentials, then printer availability. Nothing is
    written unless every check passes; the booking and its confirmation
    notification are committed together.
    """
    start_time = to_utc(start_time)
    end_time = to_utc(end_time)

    validate_window(start_time, end_time, duration)

    if pla_confirmed is not True:
        raise ValidationError("PLA material must be confirmed before booking")

    missing = first_missing_credential(session, user_id)
    if missing:
        logger.info(
            "Rejected booking for user %s: missing credential %r", user_id, missing.name
        )
        raise AuthorizationError(f"Missing required credential: {missing.name}")

    # Concurrent submissions for the same printer run their conflict check
    # and insert one at a time.
    printer = lock_printer(session, printer_id)
    if not printer:
        session.rollback()
        raise NotFoundError("Printer not found")

    if has_conflict(session, printer_id, start_time, end_time):
        session.rollback()
        logger.info(
            "Rejected booking for user %s on printer %s: time conflict",
            user_id,
            printer_id,
        )
        raise ConflictError(CONFLICT_MESSAGE)

    booking = Booking(
        user_id=user_id,
        printer_id=printer_id,
        start_time=start_time,
        end_time=end_time,
        duration=duration,
        pla_confirmed=pla_confirmed,
        notes=notes,
        status="scheduled",
    )
    session.add(booking)
    create_notification(
        session,
        user_id,
        title="Booking Confirmed",
        message=(
            f"Your booking on {printer.name} has been confirmed for "
            f"{start_time:%Y-%m-%d %H:%M} UTC."
        ),
        type="success",
    )
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if not is_overlap_violation(exc):
            raise
        raise ConflictError(CONFLICT_MESSAGE) from exc
    session.refresh(booking)
    logger.info(
        "Booked printer %s for user %s from %s to %s",
        printer_id,
        user_id,
        start_time.isoformat(),
        end_time.isoformat(),
    )
    return booking


# --- Queries ---
def get_booking(session: Session, booking_id: int) -> Booking:
    booking = session.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def list_user_bookings(session: Session, user_id: int) -> list[Booking]:
    query = (
        select(Booking)
        .where(Booking.user_id == user_id)
        .order_by(Booking.start_time.desc())
    )
    return list(session.exec(query).all())


def list_bookings(
    session: Session,
    printer_id: Optional[int] = None,
    user_id: Optional[int] = None,
    status: Optional[str] = None,
) -> list[Booking]:
    query = select(Booking)
    if printer_id:
        query = query.where(Booking.printer_id == printer_id)
    if user_id:
        query = query.where(Booking.user_id == user_id)
    if status:
        query = query.where(Booking.status == status)
    return list(session.exec(query.order_by(Booking.start_time.desc())).all())


# --- Status machine ---
def ensure_can_manage(user: User, booking: Booking) -> None:
    if booking.user_id != user.id and not user.is_admin:
        raise AuthorizationError("Not authorised to change someone else's booking")


def can_drive_status(user: User, booking: Booking) -> bool:
    if user.is_admin:
        return True
    return BOOKING_STATUS_AUTHORITY == "owner" and booking.user_id == user.id


def transition_booking(session: Session, booking: Booking, new_status: str) -> Booking:
    """Move a booking along the status machine, updating its printer to match."""
    if new_status not in ALLOWED_TRANSITIONS.get(booking.status, set()):
        raise ConflictError(f"Cannot move booking from {booking.status} to {new_status}")

    old_status = booking.status
    booking.status = new_status
    printer = session.get(Printer, booking.printer_id)
    if printer:
        if new_status == "active":
            printer.status = "in_use"
            printer.last_used = utcnow()
        elif old_status == "active" and printer.status == "in_use":
            printer.status = "available"
        session.add(printer)
    if new_status == "completed":
        booking.print_progress = 100
    session.add(booking)
    create_notification(
        session,
        booking.user_id,
        title=f"Booking {new_status.capitalize()}",
        message=f"Your booking #{booking.id} is now {new_status}.",
        type="error" if new_status == "failed" else "info",
    )
    session.commit()
    session.refresh(booking)
    logger.info("Booking %s moved from %s to %s", booking.id, old_status, new_status)
    return booking


def cancel_booking(session: Session, user: User, booking: Booking) -> Booking:
    ensure_can_manage(user, booking)
    if booking.status != "scheduled" and not can_drive_status(user, booking):
        raise ConflictError("Only scheduled bookings can be cancelled")
    return transition_booking(session, booking, "cancelled")


def update_progress(session: Session, booking: Booking, print_progress: float) -> Booking:
    if booking.status != "active":
        raise ConflictError("Print progress can only be reported for active bookings")
    if not 0 <= print_progress <= 100:
        raise ValidationError("Print progress must be between 0 and 100")
    booking.print_progress = print_progress
    session.add(booking)
    session.commit()
    session.refresh(booking)
    return booking
