"""Keeps internal subscriptions converged with the billing platform."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .catalog import plan_name_for
from .exceptions import NotFound
from .external import ExternalInvoice, ExternalPayment, ExternalSubscription, ExternalSubscriptionState
from .gateway import AuditContext, BillingGateway, CancelPolicy, GatewayFactory
from .invoices import pay_outstanding_invoice
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    InboundEvent,
    InvalidTransition,
    ResubscriptionReason,
    Subscription,
    SubscriptionStatus,
)
from .service import BillingEventLogger, BillingNotifier, BillingRepository, SubscriptionChange

logger = logging.getLogger("billing")

EVERGREEN_PHASE = "EVERGREEN"
SUBSCRIPTION_AUDIT = AuditContext(reason="CrowdChurn subscription management")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cancel_immediately(subscription: Subscription, now: datetime) -> Optional[Subscription]:
    if subscription.cancelled_at is not None:
        return None
    return subscription.transition(SubscriptionStatus.CANCELLED, cancelled_at=now, cancel_at=None)


def schedule_cancellation(
    subscription: Subscription, cancel_at: Optional[datetime], now: datetime
) -> Optional[Subscription]:
    if subscription.cancelled_at is not None or cancel_at is None:
        return None
    if subscription.cancel_at == cancel_at:
        return None
    return subscription.model_copy(update={"cancel_at": cancel_at, "updated_at": now})


def deactivate(subscription: Subscription, now: datetime) -> Optional[Subscription]:
    if subscription.deactivated_at is not None:
        return None
    return subscription.transition(SubscriptionStatus.BLOCKED, deactivated_at=now)


class SubscriptionReconciler:
    """Drives lifecycle commands outbound and applies lifecycle events inbound.

    Every inbound mutation is computed from the freshly locked row so
    duplicate or reordered deliveries converge instead of replaying deltas.
    """

    def __init__(
        self,
        repository: BillingRepository,
        gateways: GatewayFactory,
        notifier: BillingNotifier,
        event_logger: BillingEventLogger,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repository = repository
        self._gateways = gateways
        self._notifier = notifier
        self._event_logger = event_logger
        self._clock = clock

    def _gateway(self, subscription: Subscription) -> BillingGateway:
        return self._gateways.for_subscription(subscription)

    def _audit(self, event_type: BillingAuditEventType, subscription: Subscription, **metadata: str) -> None:
        self._event_logger.log(
            BillingAuditEvent(
                event_type=event_type,
                subscription_id=subscription.subscription_id,
                metadata={key: value for key, value in metadata.items() if value is not None},
            )
        )

    def _apply(self, subscription: Subscription, change: SubscriptionChange) -> Optional[Subscription]:
        try:
            return self._repository.apply_subscription_change(subscription.subscription_id, change)
        except InvalidTransition as exc:
            logger.warning(
                "Ignoring subscription change: %s",
                exc,
                extra={"subscription_id": subscription.subscription_id},
            )
            return None

    # -- outbound commands ----------------------------------------------

    def create_subscription(
        self,
        subscription: Subscription,
        payment_method_id: Optional[str] = None,
        plan_name: Optional[str] = None,
        *,
        audit: Optional[AuditContext] = None,
    ) -> ExternalSubscription:
        gateway = self._gateway(subscription)
        product = self._repository.get_product(subscription.product_id)
        if plan_name is None:
            if product is None:
                raise NotFound(
                    f"Product {subscription.product_id} not found",
                    detail={"subscription_id": subscription.subscription_id},
                )
            plan_name = plan_name_for(product, subscription.recurrence)

        account_id = gateway.get_or_create_account(subscription, product, audit=audit or SUBSCRIPTION_AUDIT)
        if payment_method_id:
            gateway.set_default_payment_method(account_id, payment_method_id, audit=audit or SUBSCRIPTION_AUDIT)
        created = gateway.create_subscription(
            account_id, plan_name, subscription.external_id, audit=audit or SUBSCRIPTION_AUDIT
        )
        self._audit(BillingAuditEventType.SUBSCRIPTION_CREATED, subscription, plan_name=plan_name)
        return created

    def _external(self, subscription: Subscription) -> Optional[ExternalSubscription]:
        return self._gateway(subscription).get_subscription_by_external_key(subscription.external_id)

    def cancel(
        self,
        subscription: Subscription,
        immediately: bool = False,
        *,
        audit: Optional[AuditContext] = None,
    ) -> Optional[ExternalSubscription]:
        external = self._external(subscription)
        if external is None:
            return None
        policy = CancelPolicy.IMMEDIATE if immediately else CancelPolicy.END_OF_TERM
        self._gateway(subscription).cancel_subscription(
            external.subscription_id, policy, audit=audit or SUBSCRIPTION_AUDIT
        )
        return external

    def pause(self, subscription: Subscription, *, audit: Optional[AuditContext] = None) -> Optional[ExternalSubscription]:
        """Pause billing. The block applies to every subscription on the account."""

        external = self._external(subscription)
        if external is None or not external.account_id:
            return None
        self._gateway(subscription).pause_subscription(external.account_id, audit=audit or SUBSCRIPTION_AUDIT)
        return external

    def resume(self, subscription: Subscription, *, audit: Optional[AuditContext] = None) -> Optional[ExternalSubscription]:
        external = self._external(subscription)
        if external is None or not external.account_id:
            return None
        self._gateway(subscription).resume_subscription(external.account_id, audit=audit or SUBSCRIPTION_AUDIT)
        return external

    def change_plan(
        self,
        subscription: Subscription,
        new_plan_name: str,
        immediately: bool = True,
        *,
        audit: Optional[AuditContext] = None,
    ) -> Optional[ExternalSubscription]:
        external = self._external(subscription)
        if external is None:
            return None
        self._gateway(subscription).change_plan(
            external.subscription_id, new_plan_name, immediately=immediately, audit=audit or SUBSCRIPTION_AUDIT
        )
        return external

    def list_invoices(self, subscription: Subscription) -> List[ExternalInvoice]:
        external = self._external(subscription)
        if external is None or not external.account_id:
            return []
        return self._gateway(subscription).get_invoices(external.account_id)

    def retry_payment(
        self,
        subscription: Subscription,
        invoice_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        *,
        audit: Optional[AuditContext] = None,
    ) -> Optional[ExternalPayment]:
        """Pay ``invoice_id``, or the first committed unpaid invoice on the account."""

        if invoice_id is None:
            unpaid = [invoice for invoice in self.list_invoices(subscription) if invoice.committed and not invoice.paid]
            if not unpaid:
                return None
            invoice_id = unpaid[0].invoice_id
        return pay_outstanding_invoice(
            self._gateway(subscription),
            invoice_id,
            payment_method_id=payment_method_id,
            audit=audit or SUBSCRIPTION_AUDIT,
        )

    # -- inbound events --------------------------------------------------

    def handle_creation(self, subscription: Subscription, event: InboundEvent) -> None:
        logger.info(
            "Subscription created on billing platform: %s",
            subscription.external_id,
            extra={"subscription_id": subscription.subscription_id, "object_id": event.object_id},
        )

    def handle_cancellation(self, subscription: Subscription, event: InboundEvent) -> Optional[Subscription]:
        """Cancel now when the effective date has passed, otherwise at term end."""

        now = self._clock()
        effective = event.effective_date
        if effective is not None and effective <= now:
            updated = self._apply(subscription, lambda current: cancel_immediately(current, now))
            if updated is not None:
                self._audit(BillingAuditEventType.SUBSCRIPTION_CANCELLED, updated)
                logger.info("Subscription cancelled: %s", updated.external_id)
            return updated

        updated = self._apply(
            subscription,
            lambda current: schedule_cancellation(current, effective or current.current_period_end, now),
        )
        if updated is not None:
            self._audit(
                BillingAuditEventType.SUBSCRIPTION_CANCEL_SCHEDULED,
                updated,
                cancel_at=updated.cancel_at.isoformat() if updated.cancel_at else None,
            )
            logger.info("Subscription cancellation scheduled: %s", updated.external_id)
        return updated

    def handle_uncancellation(self, subscription: Subscription, event: InboundEvent) -> Optional[Subscription]:
        now = self._clock()
        restarted = False

        def reactivate(current: Subscription) -> Optional[Subscription]:
            nonlocal restarted
            if current.cancelled_at is None and current.failed_at is None:
                if current.cancel_at is None:
                    return None
                return current.model_copy(update={"cancel_at": None, "updated_at": now})
            restarted = True
            return current.transition(
                SubscriptionStatus.ACTIVE,
                cancelled_at=None,
                failed_at=None,
                cancel_at=None,
                deactivated_at=None,
            )

        updated = self._apply(subscription, reactivate)
        if updated is not None and restarted:
            reason = ResubscriptionReason.PAYMENT_ISSUE_RESOLVED
            self._notifier.notify_subscription_restarted(updated, reason)
            self._audit(BillingAuditEventType.SUBSCRIPTION_REACTIVATED, updated, reason=reason.value)
            logger.info("Subscription reactivated: %s", updated.external_id)
        return updated

    def handle_change(self, subscription: Subscription, event: InboundEvent) -> None:
        if not event.new_plan:
            return
        self._audit(BillingAuditEventType.SUBSCRIPTION_PLAN_CHANGED, subscription, new_plan=event.new_plan)
        logger.info("Subscription plan changed to %s: %s", event.new_plan, subscription.external_id)

    def handle_phase(self, subscription: Subscription, event: InboundEvent) -> None:
        if event.new_phase == EVERGREEN_PHASE and subscription.in_free_trial(self._clock()):
            self._audit(BillingAuditEventType.FREE_TRIAL_ENDED, subscription)
            logger.warning(
                "Free trial ended on billing platform before internal trial end: %s",
                subscription.external_id,
                extra={"free_trial_ends_at": str(subscription.free_trial_ends_at)},
            )

    # -- pull reconciliation ---------------------------------------------

    def sync_subscription_with_killbill(self, subscription: Subscription) -> Optional[ExternalSubscription]:
        external = self._external(subscription)
        if external is None:
            return None

        now = self._clock()
        state = external.state_at(now)
        if state == ExternalSubscriptionState.CANCELLED:
            updated = self._apply(subscription, lambda current: cancel_immediately(current, now))
            if updated is not None:
                self._audit(BillingAuditEventType.SUBSCRIPTION_CANCELLED, updated, source="sync")
        elif state == ExternalSubscriptionState.BLOCKED:
            updated = self._apply(subscription, lambda current: deactivate(current, now))
            if updated is not None:
                self._audit(BillingAuditEventType.SUBSCRIPTION_DEACTIVATED, updated, source="sync")
        elif external.cancelled_date is not None:
            # Cancelled at term end on the platform; keep access until then.
            cancel_at = external.cancelled_date
            updated = self._apply(subscription, lambda current: schedule_cancellation(current, cancel_at, now))
            if updated is not None:
                self._audit(
                    BillingAuditEventType.SUBSCRIPTION_CANCEL_SCHEDULED,
                    updated,
                    cancel_at=cancel_at.isoformat(),
                    source="sync",
                )
        return external


__all__ = ["SubscriptionReconciler", "cancel_immediately", "deactivate", "schedule_cancellation"]
