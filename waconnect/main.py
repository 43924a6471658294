"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from waconnect.api.middleware import CorrelationIdMiddleware
from waconnect.api.routes import api_router
from waconnect.domain.services.provisioning_poller import provisioning_runner
from waconnect.infrastructure.redis import redis_client
from waconnect.logging_config import setup_logging
from waconnect.settings import settings

# Setup logging
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    await redis_client.connect()
    yield
    # Shutdown
    await provisioning_runner.shutdown()
    await redis_client.disconnect()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Multi-tenant WhatsApp Business onboarding and messaging",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(CorrelationIdMiddleware)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
