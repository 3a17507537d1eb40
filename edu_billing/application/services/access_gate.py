from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Sequence

from ...domain.errors import MalformedEventError, StoreUnavailableError
from ...domain.models import EntitlementDecision, EntitlementStatus
from ...domain.ports.persistence import BillingRecordStore, UserDirectory
from .entitlement_resolver import BYPASS_POLICIES, BypassPolicy, resolve

logger = logging.getLogger(__name__)

_NEXT_ACTIONS = {
    EntitlementStatus.NONE: "start_trial",
    EntitlementStatus.TRIAL_EXPIRED: "upgrade",
    EntitlementStatus.EXPIRED: "renew",
    EntitlementStatus.CANCELED: "resubscribe",
    EntitlementStatus.PAST_DUE: "update_payment_method",
    EntitlementStatus.UNAUTHENTICATED: "sign_in",
    EntitlementStatus.UNAVAILABLE: "retry_later",
}


@dataclass(slots=True, frozen=True)
class AccessCheck:
    decision: EntitlementDecision
    next_action: Optional[str] = None

    @property
    def has_access(self) -> bool:
        return self.decision.has_access

    def to_dict(self) -> Dict[str, Any]:
        payload = self.decision.to_dict()
        payload["nextAction"] = self.next_action
        return payload


class AccessGate:
    """Per-request access check; read-only over users and billing records."""

    def __init__(
        self,
        users: UserDirectory,
        billing_records: BillingRecordStore,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        policies: Sequence[BypassPolicy] = BYPASS_POLICIES,
    ) -> None:
        self._users = users
        self._billing_records = billing_records
        self._clock = clock
        self._policies = policies

    def check_access(self, user_id: Optional[int]) -> AccessCheck:
        """Resolve access for an authenticated user id; ``None`` means unauthenticated."""
        if user_id is None:
            return self._deny(EntitlementStatus.UNAUTHENTICATED, "Sign in to continue.")

        try:
            user = self._users.get_by_id(user_id)
            if user is None:
                return self._deny(EntitlementStatus.UNAUTHENTICATED, "Sign in to continue.")
            records = self._billing_records.list_by_user_id(user.id)
        except (StoreUnavailableError, MalformedEventError):
            logger.exception("Access check for user %s failed; denying", user_id)
            return self._deny(
                EntitlementStatus.UNAVAILABLE,
                "We couldn't verify your subscription right now. Please try again shortly.",
            )

        decision = resolve(
            user.role, records, now=self._clock(), policies=self._policies, email=user.email
        )
        if not decision.has_access:
            logger.debug("Access denied for user %s: %s", user.id, decision.status.value)
        return AccessCheck(
            decision=decision,
            next_action=None if decision.has_access else _NEXT_ACTIONS.get(decision.status),
        )

    @staticmethod
    def _deny(status: EntitlementStatus, reason: str) -> AccessCheck:
        return AccessCheck(
            decision=EntitlementDecision(has_access=False, status=status, reason=reason),
            next_action=_NEXT_ACTIONS[status],
        )
