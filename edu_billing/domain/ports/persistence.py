from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from ..models import BillingRecord, BillingStatus, PlanType, Role, User


class UserDirectory(Protocol):
    """Read access to application users plus the one-time customer id backfill."""

    def create(
        self,
        email: str,
        password_hash: str,
        role: Role,
        stripe_customer_id: Optional[str] = None,
    ) -> User:
        ...

    def get_by_id(self, user_id: int) -> Optional[User]:
        ...

    def get_by_email(self, email: str) -> Optional[User]:
        ...

    def get_by_stripe_customer_id(self, customer_id: str) -> Optional[User]:
        ...

    def backfill_stripe_customer_id(self, user_id: int, customer_id: str) -> bool:
        ...


class BillingRecordStore(Protocol):
    """Persistence for billing records. Records are never deleted."""

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
        ...

    def get_by_id(self, record_id: int) -> Optional[BillingRecord]:
        ...

    def get_by_stripe_subscription_id(self, stripe_subscription_id: str) -> Optional[BillingRecord]:
        ...

    def find_reconciled(self, user_id: int, stripe_subscription_id: str) -> Optional[BillingRecord]:
        ...

    def list_by_user_id(self, user_id: int) -> List[BillingRecord]:
        ...

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
        ...

    def update_status(
        self,
        stripe_subscription_id: str,
        status: BillingStatus,
        *,
        canceled_at: Optional[datetime] = None,
        last_event_at: Optional[datetime] = None,
    ) -> Optional[BillingRecord]:
        ...

    def set_cancel_at_period_end(
        self,
        record_id: int,
        cancel_at_period_end: bool,
        canceled_at: Optional[datetime],
    ) -> Optional[BillingRecord]:
        ...
