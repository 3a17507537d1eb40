from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol


class PaymentGateway(Protocol):
    """Payment provider operations the billing subsystem depends on."""

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        ...

    def retrieve_checkout_session(self, session_id: str) -> Mapping[str, Any]:
        ...

    def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        ...

    def create_checkout_session(
        self,
        *,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        client_reference_id: Optional[str] = None,
        trial_period_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        ...

    def set_cancel_at_period_end(self, subscription_id: str, cancel_at_period_end: bool) -> Mapping[str, Any]:
        ...

    def create_portal_session(
        self,
        *,
        customer_id: str,
        return_url: str,
        configuration: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...
