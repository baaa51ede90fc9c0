"""Public routes: health, availability, reservations, payments, webhooks."""

from fastapi import APIRouter

from tembea.api.routes import (
    bookings,
    items,
    manual_entries,
    payments,
    reservations,
    webhooks_mpesa,
)

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


router.include_router(items.router)
router.include_router(manual_entries.router)
router.include_router(reservations.router)
router.include_router(payments.router)
router.include_router(bookings.router)
router.include_router(webhooks_mpesa.router)
