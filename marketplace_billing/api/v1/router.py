from fastapi import APIRouter
from marketplace_billing.api.v1.routes import subscriptions, upsells, webhooks, admin

api_router = APIRouter()

api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
api_router.include_router(upsells.router, prefix="/upsells", tags=["upsells"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
