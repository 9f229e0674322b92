from fastapi import APIRouter

from .endpoints import (
    loyalty,
    orders,
    payments,
)

router = APIRouter()
router.include_router(orders.router)
router.include_router(payments.router)
router.include_router(loyalty.router)
