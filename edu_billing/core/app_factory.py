from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .container import ApplicationContainer
from .logging import configure_logging
from ..application.services.access_gate import AccessGate
from ..application.services.entitlement_resolver import bypass_policies
from ..application.services.reconciliation_service import PaymentReconciler
from ..domain.ports.payments import PaymentGateway
from ..infrastructure.repositories.billing_record_repository import BillingRecordRepository
from ..infrastructure.repositories.user_repository import UserRepository
from ..presentation.api.routers import auth as auth_router
from ..presentation.api.routers import stripe_router
from ..presentation.api.routers import subscription_router
from ..services.stripe_service import StripeService
from ..services.subscription_service import SubscriptionService
from ..services.user_service import UserService

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def create_application(
    settings: Optional[Settings] = None,
    payment_gateway: Optional[PaymentGateway] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = settings or Settings()

    app = FastAPI(
        title="Education Billing Entitlements",
        lifespan=_create_lifespan(settings, payment_gateway, clock),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router.router)
    app.include_router(stripe_router.router)
    app.include_router(subscription_router.router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        container: ApplicationContainer = app.state.container  # type: ignore[attr-defined]
        gateway = container.payment_gateway
        configured = gateway.is_configured() if hasattr(gateway, "is_configured") else True
        return {"ok": True, "stripe_configured": configured}

    return app


def _create_lifespan(
    settings: Settings,
    payment_gateway: Optional[PaymentGateway],
    clock: Optional[Clock],
):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        now = clock or (lambda: datetime.now(timezone.utc))

        settings.database_path.parent.mkdir(parents=True, exist_ok=True)
        users = UserRepository(str(settings.database_path))
        billing_records = BillingRecordRepository(str(settings.database_path))

        gateway = payment_gateway or StripeService(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            webhook_tolerance=settings.stripe_webhook_tolerance,
            timeout_seconds=settings.stripe_timeout_seconds,
        )

        if settings.jwt_secret == "change-me":
            logger.warning(
                "JWT_SECRET is using the default value. Configure a secure secret in production."
            )
        user_service = UserService(
            users,
            jwt_secret=settings.jwt_secret,
            jwt_expiration_hours=settings.jwt_expiration_hours,
        )
        policies = bypass_policies(settings.demo_account_emails)
        subscription_service = SubscriptionService(
            billing_records,
            gateway,
            price_ids=settings.stripe_price_ids,
            frontend_base_url=settings.frontend_base_url,
            trial_period_days=settings.trial_period_days,
            portal_configuration=settings.stripe_portal_configuration,
            policies=policies,
            clock=now,
        )
        reconciler = PaymentReconciler(users, billing_records, gateway, clock=now)
        access_gate = AccessGate(users, billing_records, clock=now, policies=policies)

        app.state.container = ApplicationContainer(  # type: ignore[attr-defined]
            settings=settings,
            users=users,
            billing_records=billing_records,
            payment_gateway=gateway,
            user_service=user_service,
            subscription_service=subscription_service,
            reconciler=reconciler,
            access_gate=access_gate,
        )

        yield

    return lifespan
