"""Entitlement resolution: (role, billing records) -> access decision.

Pure and total over well-formed records; it reads nothing and writes nothing.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Iterable, Optional, Sequence, Tuple

from ...domain.models import (
    BillingRecord,
    BillingStatus,
    EntitlementDecision,
    EntitlementStatus,
    Role,
)

ONE_DAY = timedelta(days=1)
TRIAL_ENDING_SOON_DAYS = 3

_MIN_DATETIME = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(slots=True, frozen=True)
class BypassPolicy:
    """Access regardless of billing state, for a role or for listed account emails."""

    role: Optional[Role]
    label: str
    emails: FrozenSet[str] = frozenset()

    def applies_to(self, role: Role, email: Optional[str] = None) -> bool:
        if self.role is not None and role is self.role:
            return True
        return bool(email) and email.strip().lower() in self.emails


# Evaluated in order; the first match wins.
BYPASS_POLICIES: Tuple[BypassPolicy, ...] = (
    BypassPolicy(Role.ADMIN, "Admin Access"),
    BypassPolicy(Role.INSTRUCTOR, "Instructor Access"),
)


def email_bypass(emails: Iterable[str], label: str = "Demo Access") -> BypassPolicy:
    """Policy for an allow-list of accounts (demo logins and the like)."""
    return BypassPolicy(
        role=None,
        label=label,
        emails=frozenset(email.strip().lower() for email in emails if email.strip()),
    )


def bypass_policies(demo_emails: Sequence[str] = ()) -> Tuple[BypassPolicy, ...]:
    """The built-in role policies, followed by a demo allow-list when one is configured."""
    if not demo_emails:
        return BYPASS_POLICIES
    return BYPASS_POLICIES + (email_bypass(demo_emails),)


def bypasses(
    role: Role,
    email: Optional[str] = None,
    policies: Sequence[BypassPolicy] = BYPASS_POLICIES,
) -> Optional[BypassPolicy]:
    for policy in policies:
        if policy.applies_to(role, email):
            return policy
    return None


def selection_key(record: BillingRecord) -> Tuple[bool, datetime, datetime, int]:
    """
    Rank records for selection: active/trialing outranks any terminal status,
    then the latest period end, then the newest record.
    """
    return (
        record.is_active_like(),
        record.current_period_end,
        record.created_at or _MIN_DATETIME,
        record.id,
    )


def select_record(records: Iterable[BillingRecord]) -> Optional[BillingRecord]:
    candidates = list(records)
    if not candidates:
        return None
    return max(candidates, key=selection_key)


def expiry_for(record: BillingRecord) -> Optional[datetime]:
    if record.is_trial():
        return record.trial_ends_at or record.current_period_end
    return record.current_period_end


def days_remaining(expiry: Optional[datetime], now: datetime) -> Optional[int]:
    if expiry is None or expiry <= now:
        return None
    return math.ceil((expiry - now) / ONE_DAY)


def resolve(
    role: Role,
    records: Sequence[BillingRecord],
    now: Optional[datetime] = None,
    policies: Sequence[BypassPolicy] = BYPASS_POLICIES,
    *,
    email: Optional[str] = None,
) -> EntitlementDecision:
    """
    Decide whether a user with ``role`` and ``records`` has access at ``now``.

    Bypass policies (matched on role, or on ``email`` for allow-lists)
    short-circuit before billing state is looked at. Otherwise
    the single most relevant record is selected and its status and expiry
    produce a specific status/reason, including for denials.
    """
    now = now or datetime.now(timezone.utc)

    policy = bypasses(role, email, policies)
    if policy is not None:
        return EntitlementDecision(
            has_access=True,
            status=EntitlementStatus.ACTIVE,
            reason=policy.label,
        )

    record = select_record(records)
    if record is None:
        return EntitlementDecision(
            has_access=False,
            status=EntitlementStatus.NONE,
            reason="No active subscription. Start your free trial to unlock all features.",
        )

    expiry = expiry_for(record)

    if record.status is BillingStatus.PAST_DUE:
        return EntitlementDecision(
            has_access=False,
            status=EntitlementStatus.PAST_DUE,
            reason="Your payment failed. Please update your payment method to restore access.",
            expires_at=expiry,
            record_id=record.id,
        )

    if record.status is BillingStatus.CANCELED:
        return EntitlementDecision(
            has_access=False,
            status=EntitlementStatus.CANCELED,
            reason="Your subscription has been canceled. Subscribe again to restore access.",
            expires_at=expiry,
            record_id=record.id,
        )

    if expiry is not None and expiry <= now:
        if record.is_trial():
            return EntitlementDecision(
                has_access=False,
                status=EntitlementStatus.TRIAL_EXPIRED,
                reason="Your free trial has ended. Upgrade to continue accessing all features.",
                expires_at=expiry,
                record_id=record.id,
            )
        return EntitlementDecision(
            has_access=False,
            status=EntitlementStatus.EXPIRED,
            reason="Your subscription has expired. Please renew to restore access.",
            expires_at=expiry,
            record_id=record.id,
        )

    remaining = days_remaining(expiry, now)

    if record.status is BillingStatus.TRIALING:
        if remaining is not None and remaining <= TRIAL_ENDING_SOON_DAYS:
            plural = "" if remaining == 1 else "s"
            reason = f"Your free trial ends in {remaining} day{plural}. Upgrade now to keep access!"
        else:
            reason = f"Free trial active. {remaining} days remaining."
        return EntitlementDecision(
            has_access=True,
            status=EntitlementStatus.TRIALING,
            reason=reason,
            days_remaining=remaining,
            expires_at=expiry,
            record_id=record.id,
        )

    reason = "Subscription active."
    if record.cancel_at_period_end and expiry is not None:
        reason = f"Subscription active until {expiry.date().isoformat()}; it will not renew."
    return EntitlementDecision(
        has_access=True,
        status=EntitlementStatus.ACTIVE,
        reason=reason,
        days_remaining=remaining,
        expires_at=expiry,
        record_id=record.id,
    )
