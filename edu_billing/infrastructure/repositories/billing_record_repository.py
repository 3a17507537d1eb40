"""Repository for BillingRecord persistence."""

import sqlite3
from datetime import datetime, timezone
from typing import List, Optional

from edu_billing.domain.errors import DuplicateBillingRecordError
from edu_billing.infrastructure.persistence.sqlite import connect
from edu_billing.domain.models.billing_record import BillingRecord, BillingStatus, PlanType


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class BillingRecordRepository:
    """Repository for managing BillingRecord entities in SQLite."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._initialize_table()

    def _initialize_table(self) -> None:
        """Create billing_records table if it doesn't exist."""
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS billing_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    stripe_subscription_id TEXT UNIQUE NOT NULL,
                    stripe_customer_id TEXT,
                    stripe_price_id TEXT,
                    plan_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_period_start TEXT NOT NULL,
                    current_period_end TEXT NOT NULL,
                    trial_ends_at TEXT,
                    cancel_at_period_end INTEGER DEFAULT 0,
                    canceled_at TEXT,
                    last_event_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_billing_records_user_status "
                "ON billing_records(user_id, status)"
            )
            conn.commit()

    def create(
        self,
        user_id: int,
        stripe_subscription_id: str,
        stripe_customer_id: Optional[str],
        stripe_price_id: Optional[str],
        plan_type: PlanType,
        status: BillingStatus,
        current_period_start: datetime,
        current_period_end: datetime,
        trial_ends_at: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
        canceled_at: Optional[datetime] = None,
        last_event_at: Optional[datetime] = None,
    ) -> BillingRecord:
        """
        Create a new billing record.

        Raises:
            DuplicateBillingRecordError: If a record with the same Stripe
                subscription id was written first
        """
        now = datetime.now(timezone.utc)
        record = BillingRecord(
            id=0,
            user_id=user_id,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            stripe_price_id=stripe_price_id,
            plan_type=plan_type,
            status=status,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            trial_ends_at=trial_ends_at,
            cancel_at_period_end=cancel_at_period_end,
            canceled_at=canceled_at,
            last_event_at=last_event_at,
            created_at=now,
            updated_at=now,
        )

        try:
            with connect(self.db_path) as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO billing_records (
                        user_id, stripe_subscription_id, stripe_customer_id,
                        stripe_price_id, plan_type, status, current_period_start,
                        current_period_end, trial_ends_at, cancel_at_period_end,
                        canceled_at, last_event_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.user_id,
                        record.stripe_subscription_id,
                        record.stripe_customer_id,
                        record.stripe_price_id,
                        record.plan_type.value,
                        record.status.value,
                        _iso(record.current_period_start),
                        _iso(record.current_period_end),
                        _iso(record.trial_ends_at),
                        int(record.cancel_at_period_end),
                        _iso(record.canceled_at),
                        _iso(record.last_event_at),
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
                conn.commit()
                record.id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            if "stripe_subscription_id" in str(exc):
                raise DuplicateBillingRecordError(stripe_subscription_id) from exc
            raise

        return record

    def get_by_id(self, record_id: int) -> Optional[BillingRecord]:
        """Get billing record by ID."""
        return self._fetch_one("SELECT * FROM billing_records WHERE id = ?", (record_id,))

    def get_by_stripe_subscription_id(
        self, stripe_subscription_id: str
    ) -> Optional[BillingRecord]:
        """Get billing record by Stripe subscription ID."""
        return self._fetch_one(
            "SELECT * FROM billing_records WHERE stripe_subscription_id = ?",
            (stripe_subscription_id,),
        )

    def find_reconciled(
        self, user_id: int, stripe_subscription_id: str
    ) -> Optional[BillingRecord]:
        """Find a record for this subscription, else the user's latest-ending active/trialing record."""
        return self._fetch_one(
            """
            SELECT * FROM billing_records
            WHERE stripe_subscription_id = ?
               OR (user_id = ? AND status IN (?, ?))
            ORDER BY (stripe_subscription_id = ?) DESC, current_period_end DESC, id DESC
            LIMIT 1
            """,
            (
                stripe_subscription_id,
                user_id,
                BillingStatus.ACTIVE.value,
                BillingStatus.TRIALING.value,
                stripe_subscription_id,
            ),
        )

    def list_by_user_id(self, user_id: int) -> List[BillingRecord]:
        """List all billing records for a user."""
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                "SELECT * FROM billing_records WHERE user_id = ? ORDER BY id DESC",
                (user_id,),
            )
            rows = cursor.fetchall()

        return [self._row_to_record(row) for row in rows]

    def update_from_provider(
        self,
        stripe_subscription_id: str,
        *,
        status: BillingStatus,
        current_period_start: datetime,
        current_period_end: datetime,
        trial_ends_at: Optional[datetime],
        cancel_at_period_end: bool,
        canceled_at: Optional[datetime],
        last_event_at: Optional[datetime],
    ) -> Optional[BillingRecord]:
        """Overwrite provider-owned fields with the provider's latest view."""
        with connect(self.db_path) as conn:
            conn.execute(
                """
                UPDATE billing_records
                SET status = ?, current_period_start = ?, current_period_end = ?,
                    trial_ends_at = ?, cancel_at_period_end = ?,
                    canceled_at = COALESCE(?, canceled_at),
                    last_event_at = COALESCE(?, last_event_at), updated_at = ?
                WHERE stripe_subscription_id = ?
                """,
                (
                    BillingStatus(status).value,
                    _iso(current_period_start),
                    _iso(current_period_end),
                    _iso(trial_ends_at),
                    int(cancel_at_period_end),
                    _iso(canceled_at),
                    _iso(last_event_at),
                    datetime.now(timezone.utc).isoformat(),
                    stripe_subscription_id,
                ),
            )
            conn.commit()

        return self.get_by_stripe_subscription_id(stripe_subscription_id)

    def update_status(
        self,
        stripe_subscription_id: str,
        status: BillingStatus,
        *,
        canceled_at: Optional[datetime] = None,
        last_event_at: Optional[datetime] = None,
    ) -> Optional[BillingRecord]:
        """Update only the lifecycle status of a record."""
        with connect(self.db_path) as conn:
            conn.execute(
                """
                UPDATE billing_records
                SET status = ?, canceled_at = COALESCE(?, canceled_at),
                    last_event_at = COALESCE(?, last_event_at), updated_at = ?
                WHERE stripe_subscription_id = ?
                """,
                (
                    BillingStatus(status).value,
                    _iso(canceled_at),
                    _iso(last_event_at),
                    datetime.now(timezone.utc).isoformat(),
                    stripe_subscription_id,
                ),
            )
            conn.commit()

        return self.get_by_stripe_subscription_id(stripe_subscription_id)

    def set_cancel_at_period_end(
        self,
        record_id: int,
        cancel_at_period_end: bool,
        canceled_at: Optional[datetime],
    ) -> Optional[BillingRecord]:
        """Flag or unflag a record for cancellation at period end."""
        with connect(self.db_path) as conn:
            conn.execute(
                """
                UPDATE billing_records
                SET cancel_at_period_end = ?, canceled_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    int(cancel_at_period_end),
                    _iso(canceled_at),
                    datetime.now(timezone.utc).isoformat(),
                    record_id,
                ),
            )
            conn.commit()

        return self.get_by_id(record_id)

    def _fetch_one(self, query: str, params: tuple) -> Optional[BillingRecord]:
        with connect(self.db_path) as conn:
            cursor = conn.execute(query, params)
            row = cursor.fetchone()

        if not row:
            return None

        return self._row_to_record(row)

    def _row_to_record(self, row: sqlite3.Row) -> BillingRecord:
        """Convert database row to BillingRecord entity."""
        return BillingRecord(
            id=row["id"],
            user_id=row["user_id"],
            stripe_subscription_id=row["stripe_subscription_id"],
            stripe_customer_id=row["stripe_customer_id"],
            stripe_price_id=row["stripe_price_id"],
            plan_type=PlanType(row["plan_type"]),
            status=BillingStatus(row["status"]),
            current_period_start=_parse(row["current_period_start"]),
            current_period_end=_parse(row["current_period_end"]),
            trial_ends_at=_parse(row["trial_ends_at"]),
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            canceled_at=_parse(row["canceled_at"]),
            last_event_at=_parse(row["last_event_at"]),
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )
