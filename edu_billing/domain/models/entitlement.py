"""Derived access decision, recomputed on every check."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EntitlementStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    TRIAL_EXPIRED = "trial_expired"
    EXPIRED = "expired"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    NONE = "none"
    UNAUTHENTICATED = "unauthenticated"
    UNAVAILABLE = "unavailable"


@dataclass(slots=True, frozen=True)
class EntitlementDecision:
    has_access: bool
    status: EntitlementStatus
    reason: str
    days_remaining: Optional[int] = None
    expires_at: Optional[datetime] = None
    record_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasAccess": self.has_access,
            "status": self.status.value,
            "daysRemaining": self.days_remaining,
            "reason": self.reason,
        }
