"""Stripe payment integration service."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Type

import stripe

from ..domain.errors import (
    AuthenticationFailure,
    CheckoutSessionNotFoundError,
    MalformedEventError,
    NotFoundError,
    PaymentProviderError,
    SubscriptionNotFoundError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)


class StripeService:
    """Thin wrapper over the Stripe SDK with errors mapped to the billing taxonomy."""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        webhook_tolerance: int = 300,
        timeout_seconds: int = 10,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance
        self._timeout_seconds = timeout_seconds
        self._configure_stripe()

    def _configure_stripe(self) -> None:
        """Configure Stripe SDK with API key and a bounded request timeout."""
        if self._secret_key:
            stripe.api_key = self._secret_key
            stripe.max_network_retries = 0
            stripe.default_http_client = stripe.RequestsClient(timeout=self._timeout_seconds)
        else:
            stripe.api_key = None
            logger.warning("STRIPE_SECRET_KEY not set; provider calls will fail as unavailable")

    def is_configured(self) -> bool:
        return bool(self._secret_key and self._webhook_secret)

    # ============ WEBHOOKS ============

    def construct_event(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook delivery and decode its JSON envelope.

        The signature is checked over the raw body before anything is parsed.

        Raises:
            AuthenticationFailure: Missing secret, missing header or bad signature
            MalformedEventError: Signed body is not JSON
        """
        if not self._webhook_secret:
            raise AuthenticationFailure("Webhook secret is not configured")
        if not signature_header:
            raise AuthenticationFailure("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticationFailure("Webhook payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self._webhook_secret, self._webhook_tolerance
            )
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationFailure("Invalid webhook signature") from exc

        try:
            return json.loads(body)
        except ValueError as exc:
            raise MalformedEventError("Webhook payload is not valid JSON") from exc

    # ============ CHECKOUT ============

    def retrieve_checkout_session(self, session_id: str) -> Mapping[str, Any]:
        """Fetch the authoritative checkout session with subscription and customer expanded."""
        return self._call(
            "retrieve checkout session",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["subscription", "customer"],
            not_found=CheckoutSessionNotFoundError,
        )

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
        """Create a subscription-mode checkout session."""
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if trial_period_days:
            subscription_data["trial_period_days"] = trial_period_days

        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": subscription_data,
            "payment_method_collection": "always",
            "allow_promotion_codes": True,
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        if client_reference_id:
            params["client_reference_id"] = client_reference_id

        session = self._call("create checkout session", stripe.checkout.Session.create, **params)
        return {"id": session["id"], "url": session.get("url")}

    def create_portal_session(
        self,
        *,
        customer_id: str,
        return_url: str,
        configuration: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a customer portal session for managing payment methods and invoices."""
        params: Dict[str, Any] = {"customer": customer_id, "return_url": return_url}
        if configuration:
            params["configuration"] = configuration

        portal = self._call(
            "create portal session",
            stripe.billing_portal.Session.create,
            **params,
        )
        return {"id": portal.get("id"), "url": portal["url"]}

    # ============ SUBSCRIPTIONS ============

    def retrieve_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        return self._call(
            "retrieve subscription",
            stripe.Subscription.retrieve,
            subscription_id,
            not_found=SubscriptionNotFoundError,
        )

    def set_cancel_at_period_end(
        self, subscription_id: str, cancel_at_period_end: bool
    ) -> Mapping[str, Any]:
        return self._call(
            "modify subscription",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=cancel_at_period_end,
            not_found=SubscriptionNotFoundError,
        )

    def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        not_found: Type[NotFoundError] = NotFoundError,
        **kwargs: Any,
    ) -> Any:
        if not stripe.api_key:
            raise UpstreamUnavailableError("Stripe is not configured")

        try:
            result = func(*args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("Stripe %s unavailable: %s", operation, exc)
            raise UpstreamUnavailableError(f"Stripe {operation} unavailable") from exc
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing" or exc.http_status == 404:
                raise not_found(f"Stripe {operation}: resource not found") from exc
            logger.error("Stripe %s rejected: %s", operation, exc)
            raise PaymentProviderError(f"Stripe {operation} rejected") from exc
        except stripe.AuthenticationError as exc:
            logger.error("Stripe authentication failed during %s", operation)
            raise PaymentProviderError("Stripe credentials rejected") from exc
        except stripe.StripeError as exc:
            if exc.http_status is None or exc.http_status >= 500:
                logger.warning("Stripe %s failed upstream: %s", operation, exc)
                raise UpstreamUnavailableError(f"Stripe {operation} unavailable") from exc
            logger.error("Stripe %s failed: %s", operation, exc)
            raise PaymentProviderError(f"Stripe {operation} failed") from exc

        return _to_dict(result)


def _to_dict(obj: Any) -> Any:
    """Plain nested dicts from an SDK object; StripeObject is not a Mapping."""
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return obj
