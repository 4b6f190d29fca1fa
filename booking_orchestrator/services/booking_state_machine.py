"""
Booking State Machine

The only writer of Booking.overall_status.

request_transition():
1. Load the booking (BookingNotFoundError).
2. Validate the target against ALLOWED_TRANSITIONS (InvalidTransitionError
   carries the allowed set).
3. Guarded write: UPDATE ... WHERE id = :id AND overall_status = :current.
   Zero rows means another caller won (ConcurrentModificationError).
   A TransitionIntent row is written in the same transaction.
4. Local side effects (availability, disputes) run inside that transaction
   and commit together with the status. If one raises, the transaction is
   rolled back and the status write is re-applied on its own with the intent
   left `failed`, so the reconciliation sweep can replay it later. A hold
   that had to skip days (maintenance, another booking) keeps the days it
   wrote but is reported the same way, with the skipped dates.
5. Exactly one `booking_status_changed` event is appended, with the side
   effect outcome.
External side effects (contract initiation, advancing an already signed
contract) run after commit. Notifications, including those of transitions
an effect chains into, are returned to the caller for fire-and-forget
dispatch.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    AdapterNotConfiguredError,
    BookingNotFoundError,
    ConcurrentModificationError,
    IncompleteSideEffectError,
    InvalidTransitionError,
)
from ..models.availability_day import AvailabilityStatus
from ..models.booking import Booking, BookingStatus, ContractStatus, Dispute, DisputeStatus
from ..models.booking_event import BookingEventType, EventActor
from ..models.transition_intent import IntentStatus, TransitionIntent
from ..utils.logging_config import get_logger
from .availability_cache import availability_cache
from .availability_ledger import AvailabilityLedger
from .event_log import EventLog

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)


S = BookingStatus

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    S.PENDING_CUSTOMER_ACTION.value: frozenset({S.PENDING_PAYMENT.value, S.CANCELLED.value}),
    S.PENDING_PAYMENT.value: frozenset({S.PENDING_CONTRACT.value, S.CANCELLED.value, S.FAILED.value}),
    S.PENDING_CONTRACT.value: frozenset({S.CONTRACT_PENDING_SIGNATURE.value, S.CANCELLED.value}),
    S.CONTRACT_PENDING_SIGNATURE.value: frozenset({S.UPCOMING.value, S.PENDING_CONTRACT.value, S.CANCELLED.value}),
    S.UPCOMING.value: frozenset({S.ACTIVE.value, S.CANCELLED.value}),
    S.ACTIVE.value: frozenset({S.POST_RENTAL.value, S.DISPUTED.value}),
    S.POST_RENTAL.value: frozenset({S.COMPLETED.value, S.DISPUTED.value}),
    S.COMPLETED.value: frozenset({S.DISPUTED.value}),
    S.CANCELLED.value: frozenset(),
    S.FAILED.value: frozenset(),
    S.DISPUTED.value: frozenset({S.COMPLETED.value, S.CANCELLED.value}),
}

TERMINAL_STATUSES = frozenset(
    status for status, allowed in ALLOWED_TRANSITIONS.items() if not allowed
)


def get_allowed_transitions(current_status: str) -> List[str]:
    return sorted(ALLOWED_TRANSITIONS.get(current_status, frozenset()))


def is_transition_allowed(current_status: str, target_status: str) -> bool:
    return target_status in ALLOWED_TRANSITIONS.get(current_status, frozenset())


# ==================
# Side effects
# ==================

@dataclass
class TransitionContext:
    machine: "BookingStateMachine"
    booking: Booking
    from_status: str
    to_status: str
    reason: Optional[str]
    actor_id: Optional[str]
    details: Dict[str, Any]
    # Notifications produced by transitions that side effects chain into
    notifications: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SideEffect:
    """
    One status-specific side effect.

    Local effects run inside the status write's transaction. External ones
    call a provider and run after commit. Every effect must be idempotent;
    the reconciliation sweep may replay it.
    """
    name: str
    apply: Callable[[TransitionContext], Dict[str, Any]]
    external: bool = False


def _hold_booked(ctx: TransitionContext) -> Dict[str, Any]:
    booking = ctx.booking
    result = AvailabilityLedger(ctx.machine.db).hold(
        booking.car_id, booking.start_date, booking.end_date, booking.id,
        AvailabilityStatus.BOOKED,
    )
    if not result.fully_applied:
        raise IncompleteSideEffectError("hold_availability", booking.id, result.as_dict())
    return result.as_dict()


def _release_range(ctx: TransitionContext) -> Dict[str, Any]:
    booking = ctx.booking
    result = AvailabilityLedger(ctx.machine.db).release(
        booking.car_id, booking.start_date, booking.end_date, booking.id,
    )
    return result.as_dict()


def _invalidate_availability_cache(ctx: TransitionContext) -> Dict[str, Any]:
    removed = availability_cache.invalidate_car(ctx.booking.car_id)
    return {"car_id": ctx.booking.car_id, "entries_removed": removed}


def utc_today() -> date:
    return datetime.utcnow().date()


def _release_future_dates(ctx: TransitionContext) -> Dict[str, Any]:
    """Release days after today (UTC) that are still inside the booking range"""
    booking = ctx.booking
    first_future_day = max(booking.start_date, utc_today() + timedelta(days=1))
    if first_future_day > booking.end_date:
        return {"applied": [], "skipped": {}}
    result = AvailabilityLedger(ctx.machine.db).release(
        booking.car_id, first_future_day, booking.end_date, booking.id,
    )
    return result.as_dict()


def _release_pending_holds(ctx: TransitionContext) -> Dict[str, Any]:
    booking = ctx.booking
    result = AvailabilityLedger(ctx.machine.db).release(
        booking.car_id, booking.start_date, booking.end_date, booking.id,
        from_statuses=[AvailabilityStatus.PENDING_CONFIRMATION],
    )
    return result.as_dict()


def _open_dispute(ctx: TransitionContext) -> Dict[str, Any]:
    db = ctx.machine.db
    existing = db.query(Dispute).filter(Dispute.booking_id == ctx.booking.id).first()
    if existing:
        return {"dispute_id": existing.id, "created": False}

    dispute = Dispute(
        booking_id=ctx.booking.id,
        provider_dispute_id=ctx.details.get("provider_dispute_id"),
        reason=ctx.reason or ctx.details.get("dispute_reason"),
        status=DisputeStatus.OPEN.value,
    )
    db.add(dispute)
    db.flush()
    EventLog(db).append(
        ctx.booking.id,
        BookingEventType.DISPUTE_OPENED,
        actor_type=EventActor.SYSTEM,
        details={"dispute_id": dispute.id, "reason": dispute.reason},
    )
    return {"dispute_id": dispute.id, "created": True}


def _initiate_contract(ctx: TransitionContext) -> Dict[str, Any]:
    """Send the rental agreement, then move on to contract_pending_signature"""
    machine = ctx.machine
    booking = machine.db.get(Booking, ctx.booking.id)

    submission_id = booking.contract_submission_id
    if not submission_id:
        if machine.contract_adapter is None:
            raise AdapterNotConfiguredError("docuseal")
        submission_id = machine.contract_adapter.send_for_signature(
            booking.id, build_contract_fields(booking)
        )
        machine.db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.contract_submission_id.is_(None))
            .values(
                contract_submission_id=submission_id,
                contract_status=ContractStatus.SENT.value,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        EventLog(machine.db).append(
            booking.id,
            BookingEventType.CONTRACT_SENT,
            details={"submission_id": submission_id},
        )
        machine.db.commit()

    machine.db.refresh(booking)
    advanced = False
    if booking.overall_status == S.PENDING_CONTRACT.value:
        try:
            nested = machine.request_transition(
                booking.id,
                S.CONTRACT_PENDING_SIGNATURE.value,
                reason="Contract sent for signature",
                actor_type=EventActor.SYSTEM,
                expected_status=S.PENDING_CONTRACT.value,
            )
            ctx.notifications.extend(nested.notifications)
            advanced = True
        except ConcurrentModificationError:
            logger.info(f"Booking {booking.id} moved on before the contract transition")
    else:
        # Another caller already moved it to contract_pending_signature
        advanced = _advance_if_signed(ctx, booking)
    return {"submission_id": submission_id, "advanced": advanced}


def _advance_signed_contract(ctx: TransitionContext) -> Dict[str, Any]:
    """A contract signed before the status caught up moves straight to upcoming"""
    booking = ctx.machine.db.get(Booking, ctx.booking.id, populate_existing=True)
    return {"advanced": _advance_if_signed(ctx, booking)}


def _advance_if_signed(ctx: TransitionContext, booking: Booking) -> bool:
    if (
        booking.overall_status != S.CONTRACT_PENDING_SIGNATURE.value
        or booking.contract_status != ContractStatus.SIGNED.value
    ):
        return False
    try:
        nested = ctx.machine.request_transition(
            booking.id,
            S.UPCOMING.value,
            reason="Contract already signed",
            actor_type=EventActor.SYSTEM,
            expected_status=S.CONTRACT_PENDING_SIGNATURE.value,
        )
    except ConcurrentModificationError:
        logger.info(f"Booking {booking.id} moved on before the signed-contract transition")
        return False
    ctx.notifications.extend(nested.notifications)
    return True


def build_contract_fields(booking: Booking) -> Dict[str, Any]:
    return {
        "booking_id": booking.id,
        "customer_name": booking.customer_name or "",
        "customer_email": booking.customer_email or "",
        "car_id": booking.car_id,
        "pickup_date": booking.start_date.isoformat(),
        "dropoff_date": booking.end_date.isoformat(),
        "rental_days": (booking.end_date - booking.start_date).days + 1,
        "total_price": str(booking.total_price),
        "currency": booking.currency,
    }


SIDE_EFFECTS: Dict[str, List[SideEffect]] = {
    S.PENDING_CONTRACT.value: [
        SideEffect("initiate_contract", _initiate_contract, external=True),
    ],
    S.CONTRACT_PENDING_SIGNATURE.value: [
        SideEffect("advance_signed_contract", _advance_signed_contract, external=True),
    ],
    S.UPCOMING.value: [
        SideEffect("hold_availability", _hold_booked),
    ],
    S.ACTIVE.value: [
        SideEffect("hold_availability", _hold_booked),
    ],
    S.CANCELLED.value: [
        SideEffect("release_availability", _release_range),
        SideEffect("invalidate_availability_cache", _invalidate_availability_cache),
    ],
    S.COMPLETED.value: [
        SideEffect("release_future_availability", _release_future_dates),
    ],
    S.FAILED.value: [
        SideEffect("release_pending_holds", _release_pending_holds),
    ],
    S.DISPUTED.value: [
        SideEffect("open_dispute", _open_dispute),
    ],
}

# Fire-and-forget notification templates by target status
NOTIFICATIONS: Dict[str, str] = {
    S.UPCOMING.value: "booking_confirmed",
    S.CANCELLED.value: "booking_cancelled",
}


@dataclass
class TransitionResult:
    booking_id: str
    from_status: str
    to_status: str
    intent_id: str
    side_effects: Dict[str, Any] = field(default_factory=dict)
    side_effects_ok: bool = True
    notifications: List[str] = field(default_factory=list)
    reason: Optional[str] = None


class BookingStateMachine:
    def __init__(self, db: Session, contract_adapter=None, notification_dispatcher=None):
        self.db = db
        self.contract_adapter = contract_adapter
        # Called with (booking_id, templates) for transitions a replay chains into
        self.notification_dispatcher = notification_dispatcher
        self.events = EventLog(db)

    # ==================
    # Public API
    # ==================

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.db.get(Booking, booking_id, populate_existing=True)
        if booking is None:
            raise BookingNotFoundError(booking_id)
        return booking

    def request_transition(
        self,
        booking_id: str,
        target_status: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        actor_type: EventActor = EventActor.ADMIN,
        expected_status: Optional[str] = None,
        field_updates: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        with_status_write: Optional[Callable[[Session], None]] = None,
    ) -> TransitionResult:
        """
        Validate and apply an overall_status transition.

        `expected_status` lets a caller that read the booking earlier fail
        with ConcurrentModificationError instead of applying a transition
        to a status it never saw. `field_updates` are written by the same
        guarded UPDATE (e.g. contract_status alongside the transition).
        `with_status_write` adds companion rows (provider events, dedup
        markers) that must commit if and only if the status write does.
        """
        if isinstance(target_status, BookingStatus):
            target_status = target_status.value

        booking = self.get_booking(booking_id)
        current = booking.overall_status

        if expected_status is not None and current != expected_status:
            raise ConcurrentModificationError(booking_id, expected_status)

        if not is_transition_allowed(current, target_status):
            raise InvalidTransitionError(current, target_status, ALLOWED_TRANSITIONS.get(current, ()))

        details = dict(details or {})
        field_updates = dict(field_updates or {})

        intent = self._guarded_write(booking_id, current, target_status, field_updates, with_status_write)
        booking = self.get_booking(booking_id)

        ctx = TransitionContext(
            machine=self,
            booking=booking,
            from_status=current,
            to_status=target_status,
            reason=reason,
            actor_id=actor_id,
            details=details,
        )

        effects = SIDE_EFFECTS.get(target_status, [])
        local_effects = [e for e in effects if not e.external]
        external_effects = [e for e in effects if e.external]

        outcome: Dict[str, Any] = {}
        incomplete: List[IncompleteSideEffectError] = []
        side_effects_ok = True
        try:
            for effect in local_effects:
                try:
                    outcome[effect.name] = {"ok": True, "result": effect.apply(ctx)}
                except IncompleteSideEffectError as e:
                    # Days that could be written stay written
                    outcome[effect.name] = {"ok": False, "error": e.message, "result": e.result}
                    incomplete.append(e)
        except Exception as e:
            side_effects_ok = False
            failed_name = effect.name
            logger.error(
                f"Side effect {failed_name} failed for booking {booking_id} "
                f"({current} -> {target_status}): {e}"
            )
            # Drop partial side-effect writes, keep the status write
            self.db.rollback()
            intent = self._guarded_write(booking_id, current, target_status, field_updates, with_status_write)
            intent.status = IntentStatus.FAILED.value
            intent.attempts = 1
            intent.last_error = f"{failed_name}: {e}"[:1000]
            outcome = {failed_name: {"ok": False, "error": str(e)}}
            self.events.append(
                booking_id,
                BookingEventType.SIDE_EFFECT_FAILED,
                actor_type=EventActor.SYSTEM,
                details={
                    "side_effect": failed_name,
                    "from_status": current,
                    "to_status": target_status,
                    "error": str(e),
                    "intent_id": intent.id,
                },
            )
        else:
            intent.attempts = 1
            if incomplete:
                side_effects_ok = False
                self._record_incomplete(intent, incomplete, current, target_status)
            elif not external_effects:
                intent.status = IntentStatus.APPLIED.value
                intent.applied_at = datetime.utcnow()

        self.events.append(
            booking_id,
            BookingEventType.BOOKING_STATUS_CHANGED,
            actor_type=actor_type,
            actor_id=actor_id,
            details={
                "from_status": current,
                "to_status": target_status,
                "reason": reason,
                "side_effects": outcome,
                "side_effects_ok": side_effects_ok,
                **details,
            },
        )
        self.db.commit()
        intent_id = intent.id

        structured_logger.booking_status_changed(booking_id, current, target_status, actor_id)

        result = TransitionResult(
            booking_id=booking_id,
            from_status=current,
            to_status=target_status,
            intent_id=intent_id,
            side_effects=outcome,
            side_effects_ok=side_effects_ok,
            notifications=[NOTIFICATIONS[target_status]] if target_status in NOTIFICATIONS else [],
            reason=reason,
        )

        if external_effects and side_effects_ok:
            self._run_external_effects(ctx, external_effects, intent_id, result)
        for template in ctx.notifications:
            if template not in result.notifications:
                result.notifications.append(template)

        return result

    def reconcile(self, limit: int = 50) -> Dict[str, int]:
        """
        Replay side effects of transitions whose intent never reached
        `applied` (crash between commit and external call, or a failed
        side effect). Intents whose booking has since moved to another
        status are closed without replay.
        """
        cutoff = datetime.utcnow() - timedelta(seconds=settings.reconcile_grace_seconds)
        intents = (
            self.db.query(TransitionIntent)
            .filter(
                TransitionIntent.status.in_([IntentStatus.PENDING.value, IntentStatus.FAILED.value]),
                TransitionIntent.created_at <= cutoff,
            )
            .order_by(TransitionIntent.created_at)
            .limit(limit)
            .all()
        )

        counts = {"checked": 0, "replayed": 0, "superseded": 0, "failed": 0}
        for intent in intents:
            counts["checked"] += 1
            outcome = self._replay_intent(intent)
            counts[outcome] += 1

        if counts["checked"]:
            logger.info(
                f"Reconciliation: {counts['replayed']} replayed, "
                f"{counts['superseded']} superseded, {counts['failed']} failed"
            )
        return counts

    # ==================
    # Internals
    # ==================

    def _guarded_write(
        self,
        booking_id: str,
        expected_status: str,
        target_status: str,
        field_updates: Dict[str, Any],
        with_status_write: Optional[Callable[[Session], None]] = None,
    ) -> TransitionIntent:
        values = dict(field_updates)
        values["overall_status"] = target_status
        values["updated_at"] = datetime.utcnow()

        outcome = self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.overall_status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            self.db.rollback()
            logger.warning(
                f"Lost transition race on booking {booking_id}: "
                f"expected {expected_status}, wanted {target_status}"
            )
            raise ConcurrentModificationError(booking_id, expected_status)

        intent = TransitionIntent(
            booking_id=booking_id,
            from_status=expected_status,
            to_status=target_status,
            status=IntentStatus.PENDING.value,
        )
        self.db.add(intent)
        if with_status_write is not None:
            with_status_write(self.db)
        self.db.flush()
        return intent

    def _record_incomplete(
        self,
        intent: TransitionIntent,
        incomplete: List[IncompleteSideEffectError],
        from_status: str,
        to_status: str,
    ) -> None:
        intent.status = IntentStatus.FAILED.value
        intent.last_error = "; ".join(f"{e.side_effect}: {e.message}" for e in incomplete)[:1000]
        for e in incomplete:
            logger.error(f"Side effect {e.side_effect} incomplete ({from_status} -> {to_status}): {e.message}")
            self.events.append(
                intent.booking_id,
                BookingEventType.SIDE_EFFECT_FAILED,
                actor_type=EventActor.SYSTEM,
                details={
                    "side_effect": e.side_effect,
                    "from_status": from_status,
                    "to_status": to_status,
                    "error": e.message,
                    "intent_id": intent.id,
                    "applied": e.result.get("applied", []),
                    "skipped": e.result.get("skipped", {}),
                },
            )

    def _run_external_effects(
        self,
        ctx: TransitionContext,
        effects: List[SideEffect],
        intent_id: str,
        result: TransitionResult,
    ) -> None:
        errors = []
        for effect in effects:
            try:
                result.side_effects[effect.name] = {"ok": True, "result": effect.apply(ctx)}
            except Exception as e:
                self.db.rollback()
                errors.append(f"{effect.name}: {e}")
                result.side_effects[effect.name] = {"ok": False, "error": str(e)}
                logger.error(f"External side effect {effect.name} failed for booking {ctx.booking.id}: {e}")
                self.events.append(
                    ctx.booking.id,
                    _failure_event_for(effect.name),
                    actor_type=EventActor.SYSTEM,
                    details={
                        "side_effect": effect.name,
                        "to_status": ctx.to_status,
                        "error": str(e),
                        "intent_id": intent_id,
                    },
                )

        intent = self.db.get(TransitionIntent, intent_id)
        if errors:
            result.side_effects_ok = False
            intent.status = IntentStatus.FAILED.value
            intent.last_error = "; ".join(errors)[:1000]
        else:
            intent.status = IntentStatus.APPLIED.value
            intent.applied_at = datetime.utcnow()
        self.db.commit()

    def _replay_intent(self, intent: TransitionIntent) -> str:
        intent_id = intent.id
        booking = self.db.get(Booking, intent.booking_id, populate_existing=True)

        if booking is None or booking.overall_status != intent.to_status:
            intent.status = IntentStatus.APPLIED.value
            intent.applied_at = datetime.utcnow()
            intent.last_error = (
                f"superseded by status {booking.overall_status}" if booking else "booking missing"
            )
            self.db.commit()
            return "superseded"

        ctx = TransitionContext(
            machine=self,
            booking=booking,
            from_status=intent.from_status,
            to_status=intent.to_status,
            reason="reconciliation replay",
            actor_id=None,
            details={},
        )
        effects = SIDE_EFFECTS.get(intent.to_status, [])
        outcome: Dict[str, Any] = {}
        try:
            for effect in effects:
                if effect.external:
                    continue
                outcome[effect.name] = effect.apply(ctx)
            self.db.commit()
            for effect in effects:
                if effect.external:
                    outcome[effect.name] = effect.apply(ctx)
        except Exception as e:
            self.db.rollback()
            intent = self.db.get(TransitionIntent, intent_id)
            intent.status = IntentStatus.FAILED.value
            intent.attempts = (intent.attempts or 0) + 1
            intent.last_error = str(e)[:1000]
            self.db.commit()
            logger.error(f"Replay of intent {intent_id} failed: {e}")
            return "failed"

        intent = self.db.get(TransitionIntent, intent_id)
        intent.status = IntentStatus.APPLIED.value
        intent.attempts = (intent.attempts or 0) + 1
        intent.applied_at = datetime.utcnow()
        intent.last_error = None
        self.events.append(
            intent.booking_id,
            BookingEventType.SIDE_EFFECT_REPLAYED,
            actor_type=EventActor.SYSTEM,
            details={
                "intent_id": intent_id,
                "to_status": intent.to_status,
                "side_effects": outcome,
            },
        )
        self.db.commit()
        if ctx.notifications and self.notification_dispatcher is not None:
            self.notification_dispatcher(intent.booking_id, list(ctx.notifications))
        return "replayed"


def _failure_event_for(effect_name: str) -> BookingEventType:
    if effect_name == "initiate_contract":
        return BookingEventType.CONTRACT_SEND_FAILED
    return BookingEventType.SIDE_EFFECT_FAILED
