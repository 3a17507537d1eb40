from dataclasses import dataclass

from ..application.services.access_gate import AccessGate
from ..application.services.reconciliation_service import PaymentReconciler
from .config import Settings
from ..domain.ports.payments import PaymentGateway
from ..domain.ports.persistence import BillingRecordStore, UserDirectory
from ..services.subscription_service import SubscriptionService
from ..services.user_service import UserService


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    users: UserDirectory
    billing_records: BillingRecordStore
    payment_gateway: PaymentGateway
    user_service: UserService
    subscription_service: SubscriptionService
    reconciler: PaymentReconciler
    access_gate: AccessGate
