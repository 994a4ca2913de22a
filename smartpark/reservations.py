"""
Reservation Engine

Creates, cancels, checks in, completes and expires reservations. Every
operation runs in one transaction; the at-most-one-open-reservation rules
are checked up front for clear errors and enforced by partial unique
indexes for concurrent writers. Change events and lifecycle notifications
are released only after commit.
"""
from datetime import timedelta
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from . import metrics
from .database import Database, retry_transient_once
from .events import ENTITY_RESERVATION, ChangeFeed, Outbox
from .exceptions import (
    SLOT_ALREADY_RESERVED,
    USER_HAS_OPEN_RESERVATION,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ParkingException,
    ValidationError,
)
from .logging_config import get_logger
from .models import OPEN_STATUSES, ParkingSlot, Reservation, ReservationStatus, SlotStatus, StatusSource
from .notifications import (
    RESERVATION_CANCELLED,
    RESERVATION_COMPLETED,
    RESERVATION_CREATED,
    LifecycleEvent,
    NotificationDispatcher,
)
from .slot_state import apply_slot_status, status_after_reservation_closed
from .utils import utcnow

logger = get_logger(__name__)


def _reservation_change(reservation: Reservation) -> dict:
    return {
        "status": reservation.status,
        "slot_id": str(reservation.slot_id),
        "user_id": reservation.user_id,
        "expires_at": reservation.expires_at.isoformat() if reservation.expires_at else None,
    }


def _conflict_kind(error: IntegrityError) -> str:
    """Which open-reservation index rejected the insert"""
    message = str(error.orig).lower()
    if "uq_reservations_user_open" in message or "reservations.user_id" in message:
        return "user"
    return "slot"


class ReservationEngine:
    """
    Reservation lifecycle state machine

    pending/active -> cancelled | expired | completed; terminal states never change.
    """

    def __init__(
        self,
        database: Database,
        feed: Optional[ChangeFeed] = None,
        notifier: Optional[NotificationDispatcher] = None,
        default_minutes: int = 15,
        max_minutes: int = 1440,
        clock: Callable = utcnow,
    ):
        self.database = database
        self.feed = feed
        self.notifier = notifier
        self.default_minutes = default_minutes
        self.max_minutes = max_minutes
        self.clock = clock

    # ============================================================
    # Create
    # ============================================================

    async def create_reservation(
        self,
        caller_id: str,
        slot_id: UUID,
        duration_minutes: Optional[int] = None,
    ) -> Reservation:
        """
        Reserve a slot for the caller

        Raises:
            ValidationError: bad caller id or duration
            ConflictError: caller or slot already has an open reservation
            NotFoundError: slot does not exist
            InvalidStateError: slot is not available
        """
        caller_id = self._validate_caller(caller_id)
        minutes = self._validate_duration(duration_minutes)
        outbox = Outbox()

        try:
            async with self.database.transaction() as session:
                if await self._open_reservation_for_user(session, caller_id) is not None:
                    raise ConflictError(USER_HAS_OPEN_RESERVATION, {"kind": "user", "user_id": caller_id})

                slot = await session.scalar(
                    select(ParkingSlot).where(ParkingSlot.id == slot_id).with_for_update()
                )
                if slot is None:
                    raise NotFoundError("Slot", slot_id)

                if await self._open_reservation_for_slot(session, slot.id) is not None:
                    raise ConflictError(SLOT_ALREADY_RESERVED, {"kind": "slot", "slot_id": str(slot.id)})

                if slot.status != SlotStatus.AVAILABLE.value:
                    raise InvalidStateError(f"Slot is {slot.status}", current_state=slot.status)

                now = self.clock()
                reservation = Reservation(
                    slot=slot,
                    user_id=caller_id,
                    status=ReservationStatus.ACTIVE.value,
                    reserved_at=now,
                    expires_at=now + timedelta(minutes=minutes),
                    created_at=now,
                    updated_at=now,
                )
                session.add(reservation)
                apply_slot_status(slot, SlotStatus.RESERVED, StatusSource.RESERVATION, now, outbox)

                # Surfaces a lost race on the open-reservation indexes as IntegrityError
                await session.flush()

                outbox.change(ENTITY_RESERVATION, "insert", reservation.id, _reservation_change(reservation))
                outbox.notify(LifecycleEvent.from_reservation(RESERVATION_CREATED, reservation))

        except IntegrityError as e:
            kind = _conflict_kind(e)
            metrics.track_reservation_attempt("conflict")
            metrics.track_reservation_conflict(kind)
            logger.info("reservation_conflict", user_id=caller_id, slot_id=str(slot_id), kind=kind, race=True)
            message = USER_HAS_OPEN_RESERVATION if kind == "user" else SLOT_ALREADY_RESERVED
            raise ConflictError(message, {"kind": kind}) from e
        except ConflictError as e:
            metrics.track_reservation_attempt("conflict")
            metrics.track_reservation_conflict(e.details.get("kind", "slot"))
            logger.info("reservation_conflict", user_id=caller_id, slot_id=str(slot_id), reason=e.message)
            raise
        except ParkingException as e:
            metrics.track_reservation_attempt(e.error_code.lower())
            raise

        outbox.release(self.feed, self.notifier)
        metrics.track_reservation_attempt("created")
        logger.info(
            "reservation_created",
            reservation_id=str(reservation.id),
            slot_id=str(reservation.slot_id),
            user_id=caller_id,
            expires_at=reservation.expires_at.isoformat(),
        )
        return reservation

    # ============================================================
    # Cancel
    # ============================================================

    async def cancel_reservation(
        self,
        caller_id: str,
        reservation_id: UUID,
        caller_is_admin: bool = False,
    ) -> Reservation:
        """
        Cancel an open reservation

        A reservation that is no longer open is returned unchanged.

        Raises:
            NotFoundError: reservation does not exist
            ForbiddenError: caller is neither the owner nor an admin
        """
        outbox = Outbox()

        async with self.database.transaction() as session:
            reservation = await self._lock_reservation(session, reservation_id)
            self._authorize(reservation, caller_id, caller_is_admin)

            if not reservation.is_open:
                logger.debug("reservation_cancel_noop", reservation_id=str(reservation.id), status=reservation.status)
                return reservation

            now = self.clock()
            reservation.status = ReservationStatus.CANCELLED.value
            reservation.cancelled_at = now
            reservation.updated_at = now
            await session.flush()

            await self._reevaluate_slot(session, reservation.slot_id, now, outbox)
            outbox.change(ENTITY_RESERVATION, "update", reservation.id, _reservation_change(reservation))
            outbox.notify(LifecycleEvent.from_reservation(RESERVATION_CANCELLED, reservation))

        outbox.release(self.feed, self.notifier)
        metrics.track_reservation_transition(ReservationStatus.CANCELLED.value)
        logger.info(
            "reservation_cancelled",
            reservation_id=str(reservation.id),
            slot_id=str(reservation.slot_id),
            by=caller_id,
            admin=caller_is_admin,
        )
        return reservation

    # ============================================================
    # Check-in / Complete
    # ============================================================

    async def check_in(
        self,
        caller_id: str,
        reservation_id: UUID,
        caller_is_admin: bool = False,
    ) -> Reservation:
        """Record the driver's arrival; the reservation stays active"""
        outbox = Outbox()

        async with self.database.transaction() as session:
            reservation = await self._lock_reservation(session, reservation_id)
            self._authorize(reservation, caller_id, caller_is_admin)

            if not reservation.is_open:
                raise InvalidStateError(
                    f"Cannot check in to a {reservation.status} reservation",
                    current_state=reservation.status,
                )
            if reservation.checked_in_at is not None:
                return reservation

            now = self.clock()
            reservation.checked_in_at = now
            reservation.updated_at = now
            outbox.change(ENTITY_RESERVATION, "update", reservation.id, _reservation_change(reservation))

        outbox.release(self.feed, self.notifier)
        logger.info("reservation_checked_in", reservation_id=str(reservation.id))
        return reservation

    async def complete_reservation(
        self,
        caller_id: str,
        reservation_id: UUID,
        caller_is_admin: bool = False,
    ) -> Reservation:
        """
        Check out: close an open reservation as completed

        An already completed reservation is returned unchanged; cancelled or
        expired ones raise InvalidStateError.
        """
        outbox = Outbox()

        async with self.database.transaction() as session:
            reservation = await self._lock_reservation(session, reservation_id)
            self._authorize(reservation, caller_id, caller_is_admin)

            if reservation.status == ReservationStatus.COMPLETED.value:
                return reservation
            if not reservation.is_open:
                raise InvalidStateError(
                    f"Cannot complete a {reservation.status} reservation",
                    current_state=reservation.status,
                )

            now = self.clock()
            reservation.status = ReservationStatus.COMPLETED.value
            reservation.checked_out_at = now
            reservation.ended_at = now
            reservation.updated_at = now
            await session.flush()

            await self._reevaluate_slot(session, reservation.slot_id, now, outbox)
            outbox.change(ENTITY_RESERVATION, "update", reservation.id, _reservation_change(reservation))
            outbox.notify(LifecycleEvent.from_reservation(RESERVATION_COMPLETED, reservation))

        outbox.release(self.feed, self.notifier)
        metrics.track_reservation_transition(ReservationStatus.COMPLETED.value)
        logger.info("reservation_completed", reservation_id=str(reservation.id), slot_id=str(reservation.slot_id))
        return reservation

    # ============================================================
    # Expire
    # ============================================================

    async def expire_overdue(self) -> List[Reservation]:
        """
        Expire every open reservation whose expires_at has passed

        Safe to call repeatedly or concurrently: rows already expired are not
        selected again. Retried once on a transient database failure.
        """
        return await retry_transient_once(self._expire_overdue_once, "expire_overdue")

    async def _expire_overdue_once(self) -> List[Reservation]:
        outbox = Outbox()

        async with self.database.transaction() as session:
            now = self.clock()
            result = await session.execute(
                update(Reservation)
                .where(
                    Reservation.status.in_(OPEN_STATUSES),
                    Reservation.expires_at <= now,
                )
                .values(status=ReservationStatus.EXPIRED.value, ended_at=now, updated_at=now)
                .returning(Reservation.id, Reservation.slot_id)
                .execution_options(synchronize_session=False)
            )
            rows = result.all()
            if not rows:
                return []

            # Lock slots in a stable order so concurrent sweeps cannot deadlock
            for slot_id in sorted({row.slot_id for row in rows}, key=str):
                await self._reevaluate_slot(session, slot_id, now, outbox)

            expired = list((await session.scalars(
                select(Reservation)
                .where(Reservation.id.in_([row.id for row in rows]))
                .order_by(Reservation.expires_at)
            )).all())

            for reservation in expired:
                outbox.change(ENTITY_RESERVATION, "update", reservation.id, _reservation_change(reservation))

        outbox.release(self.feed, self.notifier)
        metrics.track_reservation_transition(ReservationStatus.EXPIRED.value, len(expired))
        logger.info("reservations_expired", count=len(expired), ids=[str(r.id) for r in expired])
        return expired

    # ============================================================
    # Queries
    # ============================================================

    async def get_reservation(self, caller_id: str, reservation_id: UUID, caller_is_admin: bool = False) -> Reservation:
        async with self.database.session() as session:
            reservation = await session.get(Reservation, reservation_id)
            if reservation is None:
                raise NotFoundError("Reservation", reservation_id)
            self._authorize(reservation, caller_id, caller_is_admin)
            return reservation

    async def list_reservations(
        self,
        caller_id: str,
        caller_is_admin: bool = False,
        status: Optional[ReservationStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Reservation]:
        """Drivers see their own reservations, admins see all"""
        query = select(Reservation)
        if not caller_is_admin:
            query = query.where(Reservation.user_id == caller_id)
        if status is not None:
            query = query.where(Reservation.status == ReservationStatus(status).value)
        query = query.order_by(Reservation.reserved_at.desc()).limit(limit).offset(offset)

        async with self.database.session() as session:
            return list((await session.scalars(query)).all())

    # ============================================================
    # Helpers
    # ============================================================

    def _validate_caller(self, caller_id: str) -> str:
        if not caller_id or not str(caller_id).strip():
            raise ValidationError("caller_id", "caller id is required")
        caller_id = str(caller_id).strip()
        if len(caller_id) > 64:
            raise ValidationError("caller_id", "caller id is longer than 64 characters")
        return caller_id

    def _validate_duration(self, duration_minutes: Optional[int]) -> int:
        if duration_minutes is None:
            return self.default_minutes
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
            raise ValidationError("expires_in_minutes", "must be an integer number of minutes")
        if duration_minutes <= 0:
            raise ValidationError("expires_in_minutes", "must be greater than 0")
        if duration_minutes > self.max_minutes:
            raise ValidationError("expires_in_minutes", f"must be at most {self.max_minutes}")
        return duration_minutes

    @staticmethod
    def _authorize(reservation: Reservation, caller_id: str, caller_is_admin: bool):
        if caller_is_admin or reservation.user_id == caller_id:
            return
        raise ForbiddenError("Not authorized to access this reservation")

    @staticmethod
    async def _lock_reservation(session, reservation_id: UUID) -> Reservation:
        reservation = await session.scalar(
            select(Reservation).where(Reservation.id == reservation_id).with_for_update()
        )
        if reservation is None:
            raise NotFoundError("Reservation", reservation_id)
        return reservation

    @staticmethod
    async def _open_reservation_for_user(session, user_id: str) -> Optional[Reservation]:
        return await session.scalar(
            select(Reservation)
            .where(Reservation.user_id == user_id, Reservation.status.in_(OPEN_STATUSES))
            .limit(1)
        )

    @staticmethod
    async def _open_reservation_for_slot(session, slot_id: UUID) -> Optional[Reservation]:
        return await session.scalar(
            select(Reservation)
            .where(Reservation.slot_id == slot_id, Reservation.status.in_(OPEN_STATUSES))
            .limit(1)
        )

    async def _reevaluate_slot(self, session, slot_id: UUID, now, outbox: Outbox):
        """Re-derive a slot's status after one of its reservations closed"""
        slot = await session.scalar(
            select(ParkingSlot).where(ParkingSlot.id == slot_id).with_for_update()
        )
        if slot is None:
            return
        has_open = await self._open_reservation_for_slot(session, slot_id) is not None
        new_status = status_after_reservation_closed(SlotStatus(slot.status), has_open)
        apply_slot_status(slot, new_status, StatusSource.RESERVATION, now, outbox)


async def has_open_reservation(session, slot_id: UUID) -> bool:
    """Shared by the telemetry reconciler and the slot registry"""
    return await ReservationEngine._open_reservation_for_slot(session, slot_id) is not None
