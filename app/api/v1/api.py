from fastapi import APIRouter
from app.api.v1.routes.auth import router as auth_router
from app.api.v1.routes.packages import router as packages_router
from app.api.v1.routes.bookings import router as bookings_router
from app.api.v1.routes.payments import router as payments_router
from app.api.v1.routes.refunds import router as refunds_router
from app.api.v1.routes.cremation import router as cremation_router
from app.api.v1.routes.admin import router as admin_router
from app.api.v1.routes.notifications import router as notifications_router
from app.api.v1.routes.cron import router as cron_router

api_router = APIRouter(prefix="/api")
api_router.include_router(auth_router)
api_router.include_router(packages_router)
api_router.include_router(bookings_router)
api_router.include_router(payments_router)
api_router.include_router(refunds_router)
api_router.include_router(cremation_router)
api_router.include_router(admin_router)
api_router.include_router(notifications_router)
api_router.include_router(cron_router)
