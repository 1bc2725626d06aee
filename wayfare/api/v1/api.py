from fastapi import APIRouter
from wayfare.api.v1.routes.carts import router as carts_router
from wayfare.api.v1.routes.checkout import router as checkout_router
from wayfare.api.v1.routes.bookings import router as bookings_router
from wayfare.api.v1.routes.webhooks import router as webhooks_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(carts_router)
api_router.include_router(checkout_router)
api_router.include_router(bookings_router)
api_router.include_router(webhooks_router)
