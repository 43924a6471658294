"""API routes."""

from fastapi import APIRouter

from waconnect.api.routes import whatsapp_integration, whatsapp_oauth, whatsapp_webhooks

api_router = APIRouter()

# Public routes (no auth required)
api_router.include_router(whatsapp_webhooks.router, prefix="/whatsapp", tags=["whatsapp-webhooks"])

# OAuth start requires auth; the callback is reached by Meta's redirect
api_router.include_router(whatsapp_oauth.router, prefix="/whatsapp/oauth", tags=["whatsapp-oauth"])

# Protected routes (auth required)
api_router.include_router(whatsapp_integration.router, prefix="/whatsapp", tags=["whatsapp"])
