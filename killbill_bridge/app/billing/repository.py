"""PostgreSQL storage for products, subscriptions, purchases and the processed-event ledger."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Optional
from uuid import uuid4

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import managed_connection
from .models import (
    InboundEvent,
    MerchantAccount,
    Price,
    PriceType,
    Product,
    Purchase,
    PurchaseState,
    Recurrence,
    Subscription,
    SubscriptionStatus,
)
from .service import PurchaseChange, SubscriptionChange


def _row_to_price(row: dict) -> Price:
    return Price(
        price_id=str(row["price_id"]),
        product_id=str(row["product_id"]),
        currency=row["currency"],
        price_cents=int(row["price_cents"]),
        recurrence=Recurrence(row["recurrence"]) if row.get("recurrence") else None,
        price_type=PriceType(row.get("price_type") or PriceType.BUY.value),
        deleted_at=row.get("deleted_at"),
    )


def _row_to_product(row: dict, prices: Iterable[dict]) -> Product:
    return Product(
        product_id=str(row["product_id"]),
        name=row["name"],
        price_cents=int(row.get("price_cents") or 0),
        price_currency_type=row.get("price_currency_type") or "usd",
        pricing_mode=row.get("pricing_mode"),
        free_trial_duration_in_days=row.get("free_trial_duration_in_days"),
        prices=tuple(_row_to_price(price) for price in prices),
        updated_at=row["updated_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=str(row["subscription_id"]),
        external_id=row["external_id"],
        product_id=str(row["product_id"]),
        user_external_id=row.get("user_external_id"),
        email=row.get("email"),
        full_name=row.get("full_name"),
        merchant_account_id=row.get("merchant_account_id"),
        recurrence=Recurrence(row.get("recurrence") or Recurrence.MONTHLY.value),
        billing_currency=row.get("billing_currency"),
        status=SubscriptionStatus(row["status"]),
        cancelled_at=row.get("cancelled_at"),
        cancel_at=row.get("cancel_at"),
        failed_at=row.get("failed_at"),
        deactivated_at=row.get("deactivated_at"),
        free_trial_ends_at=row.get("free_trial_ends_at"),
        current_period_end=row.get("current_period_end"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_purchase(row: dict) -> Purchase:
    return Purchase(
        purchase_id=str(row["purchase_id"]),
        subscription_id=str(row["subscription_id"]),
        transaction_id=row["transaction_id"],
        charge_processor_id=row.get("charge_processor_id") or "killbill",
        price_cents=int(row.get("price_cents") or 0),
        currency=row.get("currency") or "usd",
        state=PurchaseState(row["state"]),
        succeeded_at=row.get("succeeded_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_merchant_account(row: dict) -> MerchantAccount:
    return MerchantAccount(
        merchant_account_id=str(row["merchant_account_id"]),
        killbill_instance_url=row.get("killbill_instance_url"),
        killbill_username=row.get("killbill_username"),
        killbill_password=row.get("killbill_password"),
        killbill_api_key=row.get("killbill_api_key"),
        killbill_api_secret=row.get("killbill_api_secret"),
    )


def _subscription_params(subscription: Subscription) -> Dict[str, Any]:
    return {
        "subscription_id": subscription.subscription_id,
        "status": subscription.status.value,
        "billing_currency": subscription.billing_currency,
        "cancelled_at": subscription.cancelled_at,
        "cancel_at": subscription.cancel_at,
        "failed_at": subscription.failed_at,
        "deactivated_at": subscription.deactivated_at,
    }


class PostgresBillingRepository:
    """Concrete repository persisting billing models in PostgreSQL.

    Subscription and purchase mutations lock the row with ``FOR UPDATE`` so
    concurrent event handlers serialize on it.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    # -- products and merchant accounts ---------------------------------

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_products
                WHERE product_id = %s
                LIMIT 1
                """,
                (product_id,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            cursor.execute(
                """
                SELECT *
                FROM billing_prices
                WHERE product_id = %s
                ORDER BY created_at, price_id
                """,
                (product_id,),
            )
            return _row_to_product(row, cursor.fetchall() or [])

    def get_merchant_account(self, merchant_account_id: str) -> Optional[MerchantAccount]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_merchant_accounts
                WHERE merchant_account_id = %s
                LIMIT 1
                """,
                (merchant_account_id,),
            )
            row = cursor.fetchone()
            return _row_to_merchant_account(row) if row else None

    # -- subscriptions ---------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE subscription_id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription_by_external_id(self, external_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE external_id = %s
                LIMIT 1
                """,
                (external_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_alive_subscription_for_user(self, user_external_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE user_external_id = %s
                  AND status IN ('pending', 'active')
                  AND cancelled_at IS NULL
                  AND failed_at IS NULL
                  AND deactivated_at IS NULL
                ORDER BY created_at
                LIMIT 1
                """,
                (user_external_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_subscription_by_purchase_transaction(self, transaction_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT sub.*
                FROM billing_subscriptions AS sub
                JOIN billing_purchases AS pur ON pur.subscription_id = sub.subscription_id
                WHERE pur.transaction_id = %s
                LIMIT 1
                """,
                (transaction_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def apply_subscription_change(self, subscription_id: str, change: SubscriptionChange) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE subscription_id = %s
                FOR UPDATE
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            updated = change(_row_to_subscription(row))
            if updated is None:
                return None
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET status = %(status)s,
                    billing_currency = %(billing_currency)s,
                    cancelled_at = %(cancelled_at)s,
                    cancel_at = %(cancel_at)s,
                    failed_at = %(failed_at)s,
                    deactivated_at = %(deactivated_at)s,
                    updated_at = NOW()
                WHERE subscription_id = %(subscription_id)s
                RETURNING *
                """,
                _subscription_params(updated),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription change")
            return _row_to_subscription(row)

    # -- purchases -------------------------------------------------------

    def get_purchase_by_transaction(self, transaction_id: str) -> Optional[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_purchases
                WHERE transaction_id = %s
                LIMIT 1
                """,
                (transaction_id,),
            )
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    def create_purchase(self, purchase: Purchase) -> Purchase:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_purchases (
                    purchase_id,
                    subscription_id,
                    transaction_id,
                    charge_processor_id,
                    price_cents,
                    currency,
                    state
                )
                VALUES (%(purchase_id)s, %(subscription_id)s, %(transaction_id)s,
                        %(charge_processor_id)s, %(price_cents)s, %(currency)s, %(state)s)
                ON CONFLICT (transaction_id) DO NOTHING
                RETURNING *
                """,
                {
                    "purchase_id": purchase.purchase_id,
                    "subscription_id": purchase.subscription_id,
                    "transaction_id": purchase.transaction_id,
                    "charge_processor_id": purchase.charge_processor_id,
                    "price_cents": purchase.price_cents,
                    "currency": purchase.currency,
                    "state": purchase.state.value,
                },
            )
            row = cursor.fetchone()
            if not row:
                cursor.execute(
                    "SELECT * FROM billing_purchases WHERE transaction_id = %s LIMIT 1",
                    (purchase.transaction_id,),
                )
                row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist purchase")
            return _row_to_purchase(row)

    def apply_purchase_change(self, purchase_id: str, change: PurchaseChange) -> Optional[Purchase]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_purchases
                WHERE purchase_id = %s
                FOR UPDATE
                """,
                (purchase_id,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            updated = change(_row_to_purchase(row))
            if updated is None:
                return None
            cursor.execute(
                """
                UPDATE billing_purchases
                SET state = %s,
                    price_cents = %s,
                    succeeded_at = %s,
                    updated_at = NOW()
                WHERE purchase_id = %s
                RETURNING *
                """,
                (updated.state.value, updated.price_cents, updated.succeeded_at, purchase_id),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist purchase change")
            return _row_to_purchase(row)

    # -- webhook ledger and scheduled jobs ------------------------------

    def has_processed_event(self, dedup_key: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM billing_webhook_events WHERE dedup_key = %s LIMIT 1",
                (dedup_key,),
            )
            return cursor.fetchone() is not None

    def mark_event_processed(self, event: InboundEvent) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (
                    dedup_key,
                    event_type,
                    object_id,
                    payload,
                    received_at,
                    processed_at
                )
                VALUES (%s, %s, %s, %s, %s, NOW())
                ON CONFLICT (dedup_key) DO NOTHING
                """,
                (
                    event.dedup_key,
                    event.event_type,
                    event.object_id,
                    psycopg2.extras.Json(event.payload),
                    event.received_at,
                ),
            )

    def schedule_job(
        self,
        kind: str,
        subscription_id: str,
        run_at: datetime,
        *,
        invoice_id: Optional[str] = None,
    ) -> str:
        """Queue a deferred subscription job; one pending job per kind and subscription."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_scheduled_jobs (
                    job_id,
                    kind,
                    subscription_id,
                    invoice_id,
                    run_at
                )
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (kind, subscription_id) WHERE completed_at IS NULL
                DO UPDATE SET run_at = EXCLUDED.run_at, invoice_id = EXCLUDED.invoice_id
                RETURNING job_id
                """,
                (f"job_{uuid4().hex}", kind, subscription_id, invoice_id, run_at),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to schedule billing job")
            return str(row["job_id"])


__all__ = ["PostgresBillingRepository"]
