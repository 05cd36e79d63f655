"""
Event dispatcher.

Routes a persisted ledger event to its handler by kind. Every handler leaves
the event in a terminal-for-now state (processed, orphaned or dead_letter);
unexpected exceptions propagate so the caller can leave the event
``received`` for the background sweep.
"""
from __future__ import annotations

import logging
from collections.abc import Callable

from sqlmodel import Session

from seapay import crud
from seapay.core.config import settings
from seapay.enums import DispatchOutcome, EventKind, LinkSource
from seapay.models import PaymentEvent
from seapay.services.errors import ConcurrentUpdateConflict, UnknownPlan
from seapay.services.matcher import SqlUserDirectory, UserDirectory, match_event
from seapay.services.notifier import SubscriptionNotifier
from seapay.services.plan_catalog import PlanCatalog, get_catalog
from seapay.services.state_machine import apply_payment_event

logger = logging.getLogger(__name__)


class EventDispatcher:
    def __init__(
        self,
        session: Session,
        *,
        directory: UserDirectory | None = None,
        catalog: PlanCatalog | None = None,
        notifier: SubscriptionNotifier | None = None,
    ) -> None:
        self.session = session
        self.directory = directory or SqlUserDirectory(session)
        self.catalog = catalog or get_catalog()
        self.notifier = notifier

        self.handlers: dict[EventKind, Callable[[PaymentEvent], DispatchOutcome]] = {
            EventKind.captured: self._handle_captured,
            EventKind.failed: self._handle_failed,
            EventKind.refunded: self._handle_refunded,
            EventKind.unhandled: self._handle_unhandled,
            EventKind.unparseable: self._handle_unparseable,
        }

    def dispatch(self, event: PaymentEvent) -> DispatchOutcome:
        if event.processed_at is not None:
            return DispatchOutcome.duplicate
        handler = self.handlers.get(event.kind, self._handle_unhandled)
        return handler(event)

    def apply_linked(self, event: PaymentEvent, user_id: int) -> DispatchOutcome:
        """Apply an event already linked to ``user_id``; escalations go to dead-letter."""
        try:
            result = apply_payment_event(
                self.session,
                event_id=event.id,
                user_id=user_id,
                catalog=self.catalog,
                notifier=self.notifier,
            )
        except ConcurrentUpdateConflict as e:
            self.session.rollback()
            logger.error("Payment event %s dead-lettered after retries: %s", event.id, e)
            crud.mark_dead_letter(session=self.session, event=event, error=str(e))
            return DispatchOutcome.dead_letter
        except UnknownPlan as e:
            self.session.rollback()
            logger.error("Payment event %s dead-lettered: %s", event.id, e)
            crud.mark_dead_letter(session=self.session, event=event, error=str(e))
            return DispatchOutcome.dead_letter
        return DispatchOutcome(result.outcome.value)

    def record_failure(self, event: PaymentEvent, exc: Exception) -> DispatchOutcome:
        """
        Record an unexpected dispatch error against the event.

        The event stays ``received`` (or ``orphaned``) for the next sweep until
        it has failed ``SWEEP_MAX_ATTEMPTS`` times, then goes to dead-letter for
        an operator.
        """
        self.session.rollback()
        error = f"{type(exc).__name__}: {exc}"
        crud.record_attempt(session=self.session, event=event, error=error)
        if event.attempts >= settings.SWEEP_MAX_ATTEMPTS:
            logger.error("Payment event %s dead-lettered after %d failed attempts", event.id, event.attempts)
            crud.mark_dead_letter(session=self.session, event=event, error=error)
            return DispatchOutcome.dead_letter
        return DispatchOutcome.pending

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_captured(self, event: PaymentEvent) -> DispatchOutcome:
        return self._match_and_apply(event)

    def _handle_refunded(self, event: PaymentEvent) -> DispatchOutcome:
        return self._match_and_apply(event)

    def _handle_failed(self, event: PaymentEvent) -> DispatchOutcome:
        logger.info("Payment failed: %s amount=%s", event.id, event.amount)
        crud.mark_processed(session=self.session, event=event)
        return DispatchOutcome.failure_recorded

    def _handle_unhandled(self, event: PaymentEvent) -> DispatchOutcome:
        logger.info("Unhandled webhook event %s of type %r", event.id, event.event_type)
        crud.mark_processed(session=self.session, event=event, note=f"unhandled type {event.event_type!r}")
        return DispatchOutcome.unhandled

    def _handle_unparseable(self, event: PaymentEvent) -> DispatchOutcome:
        logger.warning("Unparseable webhook body stored as %s", event.id)
        crud.mark_processed(session=self.session, event=event, note=event.last_error)
        return DispatchOutcome.unparseable

    def _match_and_apply(self, event: PaymentEvent) -> DispatchOutcome:
        user_id = event.linked_user_id
        if user_id is None:
            result = match_event(
                self.directory,
                correlation_token=event.correlation_token,
                phone=event.contact_phone,
                email=event.contact_email,
            )
            if not result.matched:
                logger.warning("Payment event %s orphaned: %s", event.id, result.reason)
                crud.mark_orphaned(session=self.session, event=event, reason=result.reason)
                return DispatchOutcome.orphaned
            crud.link_event(
                session=self.session,
                event=event,
                user_id=result.user_id,  # type: ignore[arg-type]
                linked_by=LinkSource.matcher,
                strategy=result.strategy,
            )
            user_id = result.user_id
        return self.apply_linked(event, user_id)  # type: ignore[arg-type]
