"""
Basement Control Plane API
==========================

Endpoints:
- POST /api/instances - Provision an instance for a customer
- GET /api/instances/{instance_id} - Instance status
- DELETE /api/instances/{instance_id} - Operator teardown
- POST /api/webhook/stripe - Stripe webhook (public, signature verified)
- POST /api/domains/{domain_id}/verify - Re-verify one domain's certificate now
- GET /api/reconcile/status - SSL reconciliation job status
- GET /api/health - Health check
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, field_validator
import stripe

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from basement_core import __version__
from basement_core.config import BasementConfig
from basement_core import billing
from basement_core.errors import (
    ChargeAlreadyProcessedError,
    DomainNotFoundError,
    InstanceAlreadyExistsError,
    InstanceNotFoundError,
    UnknownPlanError,
)
from basement_core.logging_config import configure_logging
from basement_core.models import PLAN_SPECS, Instance
from basement_core.providers import CloudInstanceClient, DigitalOceanClient, ProviderError
from basement_core.provisioner import InstanceProvisioner
from basement_core.services.fleet_sync import FleetSync
from basement_core.services.reconciler import ReconciliationScheduler
from basement_core.services.ssl_verification import DomainVerifier
from basement_core.ssh_client import RemoteCommandExecutor
from basement_core.store import Store
from basement_core.teardown import TeardownHandler
from basement_core import webhooks

logger = logging.getLogger(__name__)

# Load centralized config from environment
config = BasementConfig.from_env()

# Initialize Stripe
if config.stripe.secret_key:
    stripe.api_key = config.stripe.secret_key

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await startup()
    yield
    await shutdown()


app = FastAPI(
    title="Basement Control Plane",
    description="Instance provisioning and SSL reconciliation",
    version=__version__,
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

# Global service instances (set on startup)
db_pool = None
store: Optional[Store] = None
cloud: Optional[CloudInstanceClient] = None
provisioner: Optional[InstanceProvisioner] = None
teardown: Optional[TeardownHandler] = None
reconciler: Optional[ReconciliationScheduler] = None
fleet_sync: Optional[FleetSync] = None
background_tasks: List[asyncio.Task] = []


async def init_database():
    """Initialize the database connection pool."""
    global db_pool
    try:
        from basement_core.database import init_database as db_init
        db_pool = await db_init(
            config.database.url,
            min_size=config.database.min_pool_size,
            max_size=config.database.max_pool_size,
        )
        logger.info("Database pool initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        logger.warning("Running without database - records are kept in memory")


def init_cloud():
    """Initialize the DigitalOcean client."""
    global cloud
    if not config.digitalocean.is_configured:
        logger.warning("DIGITALOCEAN_TOKEN not set - provisioning disabled")
        return
    try:
        cloud = DigitalOceanClient(api_token=config.digitalocean.api_token)
        logger.info("DigitalOcean client initialized")
    except ProviderError as e:
        logger.error(f"Failed to initialize DigitalOcean client: {e}")


def refund_hook():
    """Stripe refund for failed creations, when enabled and Stripe is configured."""
    if not config.stripe.auto_refund_failed:
        return None
    if not config.stripe.secret_key:
        logger.warning("STRIPE_SECRET_KEY not set - failed provisioning will need manual refunds")
        return None
    return billing.refund_payment


def init_services():
    """Wire the workflows against the store and cloud client."""
    global store, provisioner, teardown, reconciler, fleet_sync
    store = Store(db_pool)

    if cloud:
        provisioner = InstanceProvisioner(
            store,
            cloud,
            polling=config.polling,
            region=config.digitalocean.region,
            image=config.digitalocean.image,
            system_tag=config.digitalocean.system_tag,
            refund=refund_hook(),
        )
        teardown = TeardownHandler(store, cloud, system_tag=config.digitalocean.system_tag)
        fleet_sync = FleetSync(store, cloud, config.fleet_sync, system_tag=config.digitalocean.system_tag)

    executor = RemoteCommandExecutor(
        connect_timeout=config.verification.ssh_connect_timeout_seconds,
        command_timeout=config.verification.ssh_command_timeout_seconds,
    )
    reconciler = ReconciliationScheduler(
        store,
        DomainVerifier(executor, config.verification),
        config.reconcile,
    )


async def startup():
    """Initialize all services on startup."""
    configure_logging(config.log_level, config.log_format)

    await init_database()
    init_cloud()
    init_services()

    if provisioner:
        await provisioner.resume_pending()

    if config.enable_background_jobs:
        background_tasks.append(asyncio.create_task(reconciler.start()))
        if fleet_sync:
            background_tasks.append(asyncio.create_task(fleet_sync.start()))

    logger.info("Basement control plane started")


async def shutdown():
    """Clean up on shutdown."""
    global db_pool
    if reconciler:
        reconciler.stop()
    if fleet_sync:
        fleet_sync.stop()
    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    background_tasks.clear()

    if provisioner:
        await provisioner.shutdown()
    if cloud:
        await asyncio.to_thread(cloud.close)

    if db_pool:
        await db_pool.close()
        logger.info("Database pool closed")


def require(service, name: str):
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} not configured")
    return service


def instance_to_dict(instance: Instance) -> dict:
    return {
        "id": instance.id,
        "customer_id": instance.customer_id,
        "plan": instance.plan,
        "status": instance.status.value,
        "provider_instance_id": instance.provider_instance_id,
        "ip_address": instance.ip_address,
        "login_username": instance.login_username,
        "specs": instance.specs,
        "created_at": instance.created_at.isoformat() if instance.created_at else None,
    }


class ProvisionRequest(BaseModel):
    customer_id: str
    plan: str = "basic"
    charge_reference: Optional[str] = None

    @field_validator("customer_id")
    @classmethod
    def validate_customer_id(cls, v):
        v = v.strip()
        if not re.match(r"^[A-Za-z0-9_-]{1,64}$", v):
            raise ValueError("customer_id must be 1-64 chars: letters, numbers, hyphens, underscores")
        return v

    @field_validator("plan")
    @classmethod
    def validate_plan(cls, v):
        v = v.lower().strip()
        if v not in PLAN_SPECS:
            raise ValueError(f"Plan must be one of: {', '.join(PLAN_SPECS)}")
        return v


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    health = {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database_connected": db_pool is not None,
        "provider_configured": cloud is not None,
        "stripe_configured": bool(config.stripe.secret_key),
        "webhook_configured": bool(config.stripe.webhook_secret),
        "active_polls": provisioner.active_polls if provisioner else 0,
        "reconciler": reconciler.status.value if reconciler else None,
    }

    if db_pool:
        from basement_core.database import check_health
        health["database"] = await check_health(db_pool)
        if not health["database"]["connected"]:
            health["status"] = "degraded"

    return health


@app.post("/api/instances", status_code=202)
@limiter.limit("10/minute")
async def create_instance(request: Request, body: ProvisionRequest):
    """
    Start provisioning an instance.

    Returns immediately; poll GET /api/instances/{id} for readiness.
    """
    service = require(provisioner, "Provisioning")
    try:
        instance = await service.create_instance(body.customer_id, body.plan, body.charge_reference)
    except (InstanceAlreadyExistsError, ChargeAlreadyProcessedError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except UnknownPlanError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return instance_to_dict(instance)


@app.get("/api/instances/{instance_id}")
async def get_instance(instance_id: int):
    instance = await require(store, "Store").get_instance(instance_id)
    if not instance:
        raise HTTPException(status_code=404, detail="Instance not found")
    return instance_to_dict(instance)


@app.delete("/api/instances/{instance_id}")
async def destroy_instance(instance_id: int):
    """Destroy an instance's droplet and remove its record."""
    handler = require(teardown, "Teardown")
    try:
        result = await handler.destroy_instance(instance_id)
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "instance_id": result.instance_id,
        "machine_deleted": result.machine_deleted,
        "record_deleted": result.record_deleted,
    }


@app.post("/api/webhook/stripe")
@limiter.limit("30/minute")
async def stripe_webhook(request: Request):
    """
    Handle Stripe webhook events.

    This endpoint is PUBLIC but secured via Stripe signature verification.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not config.stripe.webhook_secret:
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    try:
        event = webhooks.construct_event(payload, sig_header, config.stripe.webhook_secret)
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    outcome = await webhooks.handle_stripe_event(
        event,
        require(provisioner, "Provisioning"),
        require(teardown, "Teardown"),
    )
    return {"received": True, **outcome}


@app.post("/api/domains/{domain_id}/verify")
async def verify_domain(domain_id: int):
    """Run the DNS/certificate/TLS checks for one domain and store the result."""
    scheduler = require(reconciler, "Reconciler")
    try:
        result = await scheduler.verify_domain(domain_id)
    except (DomainNotFoundError, InstanceNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    return result.to_dict()


@app.get("/api/reconcile/status")
async def reconcile_status():
    return require(reconciler, "Reconciler").get_status()
