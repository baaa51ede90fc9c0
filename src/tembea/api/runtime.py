"""Process-wide collaborators of the HTTP layer.

Each getter is used as a FastAPI dependency so tests can swap it with
app.dependency_overrides.
"""

from __future__ import annotations

from tembea.domain.payments import PaymentGateway
from tembea.domain.reconciliation import PaymentReconciler
from tembea.mpesa.client import get_mpesa_client
from tembea.observability.logging import get_logger

logger = get_logger(__name__)

_reconciler: PaymentReconciler | None = None


def get_gateway() -> PaymentGateway | None:
    """M-Pesa client, or None when credentials are not configured.

    Free reservations still go through without a gateway; paid ones are
    rejected with payment_initiation_failed.
    """
    try:
        return get_mpesa_client()
    except RuntimeError:
        logger.warning("mpesa gateway not configured")
        return None


def get_reconciler() -> PaymentReconciler:
    global _reconciler
    if _reconciler is None:
        _reconciler = PaymentReconciler(gateway=get_gateway())
    return _reconciler
