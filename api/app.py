"""FastAPI application assembly."""

import logging

from fastapi import FastAPI

from api.actions import create_actions_router
from api.data import create_data_router
from api.errors import register_error_handlers
from api.middleware import ActorMiddleware, ActorResolver, RequestIDMiddleware, resolve_actor_from_headers
from billing.audit import AuditLogger
from billing.event_bus import EventBus
from billing.handlers.partner_cache_handler import handle_partner_earning_changed
from billing.services.config_service import ConfigService
from billing.services.earnings_service import EarningsService
from billing.services.invoice_service import InvoiceService
from billing.services.partner_analytics_service import PartnerAnalyticsService
from billing.services.payment_service import PaymentService
from billing.services.payout_service import PayoutService
from billing.services.report_service import ReportService
from billing.services.usage_aggregator import UsageAggregator
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient

logger = logging.getLogger(__name__)


def build_services(postgres: PostgresClient, valkey: ValkeyClient | None = None) -> dict:
    """
    Wire the billing services around one database client and event bus.

    Args:
        postgres: Ledger database client
        valkey: Optional cache for partner analytics summaries

    Returns:
        Dict of service name -> service instance, as consumed by the routers
    """
    audit = AuditLogger(postgres)
    event_bus = EventBus()
    usage = UsageAggregator(postgres)

    analytics = PartnerAnalyticsService(postgres, usage, cache=valkey)
    on_earning_changed = handle_partner_earning_changed(analytics)
    event_bus.subscribe("EarningsGenerated", on_earning_changed)
    event_bus.subscribe("PayoutPaid", on_earning_changed)

    return {
        "invoice": InvoiceService(postgres, audit, event_bus),
        "payment": PaymentService(postgres, audit, event_bus),
        "earnings": EarningsService(postgres, audit, event_bus, usage),
        "payout": PayoutService(postgres, audit, event_bus),
        "report": ReportService(postgres),
        "partner_analytics": analytics,
        "config": ConfigService(postgres, audit),
    }


def create_app(services: dict, resolve_actor: ActorResolver = resolve_actor_from_headers) -> FastAPI:
    """
    Build the HTTP app: middleware, error handlers, data/actions routes, health.

    Middleware added last runs first, so request ids are assigned before
    actor resolution and appear on 401 responses.
    """
    app = FastAPI(title="Ad-ops billing")
    app.add_middleware(ActorMiddleware, resolve_actor=resolve_actor)
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)

    app.include_router(create_data_router(services), prefix="/api")
    app.include_router(create_actions_router(services), prefix="/api")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    logger.info("Billing API ready with services: %s", ", ".join(sorted(services)))
    return app
