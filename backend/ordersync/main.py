"""FastAPI application entrypoint.

Configures CORS, includes routers, mounts the sqladmin back office and
exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqladmin import Admin, ModelView
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .authentication import SimpleAuth  # noqa: E402
from .database import engine  # noqa: E402
from .deps import get_settings  # noqa: E402
from .routers import orders as orders_router  # noqa: E402
from .routers import sendcloud_webhooks as sendcloud_webhooks_router  # noqa: E402
from .routers import sync as sync_router  # noqa: E402
from .telemetry import init_sentry  # noqa: E402
from . import schemas  # noqa: E402

# Import models so Alembic can discover metadata
from . import models  # noqa: E402


# SQLAdmin ModelView classes for each model.
# The back office is where operators fix products_not_found orders
# (create the product, then re-run attribution) and maintain sender rules.

class OrderAdmin(ModelView, model=models.Order):
    column_list = [
        models.Order.order_number,
        models.Order.client,
        models.Order.status,
        models.Order.delivery_country_code,
        models.Order.sender_name,
        models.Order.carrier_name,
        models.Order.carrier_selection_status,
        models.Order.tracking_number,
        models.Order.created_at,
    ]
    column_searchable_list = ["order_number", "external_id", "customer_name", "customer_email", "tracking_number"]
    column_sortable_list = ["order_number", "status", "created_at"]
    column_default_sort = ("created_at", True)
    form_excluded_columns = ["lines", "created_at", "updated_at"]
    name = "Order"
    name_plural = "Orders"
    icon = "fa-solid fa-box"


class OrderLineAdmin(ModelView, model=models.OrderLine):
    column_list = [
        models.OrderLine.order,
        models.OrderLine.product_reference,
        models.OrderLine.product_name,
        models.OrderLine.quantity,
        models.OrderLine.status,
        models.OrderLine.error_message,
    ]
    column_searchable_list = ["product_reference", "product_name"]
    column_sortable_list = ["product_reference", "status", "created_at"]
    form_ajax_refs = {
        "order": {"fields": ["order_number"], "order_by": "order_number"},
        "product": {"fields": ["reference", "name"], "order_by": "reference"},
    }
    name = "Order Line"
    name_plural = "Order Lines"
    icon = "fa-solid fa-list"


class ProductAdmin(ModelView, model=models.Product):
    """Products created during ingestion have stock 0 until restocked here."""
    column_list = [
        models.Product.reference,
        models.Product.name,
        models.Product.ean,
        models.Product.stock_available,
        models.Product.unit_weight_kg,
        models.Product.created_during_ingestion,
        models.Product.enrichment_status,
        models.Product.is_active,
    ]
    form_columns = [
        "reference", "ean", "name", "unit_weight_kg", "unit_price", "stock_available", "hs_code",
        "origin_country_code", "is_active",
    ]
    column_searchable_list = ["reference", "ean", "name"]
    column_sortable_list = ["reference", "stock_available", "created_at"]
    name = "Product"
    name_plural = "Products"
    icon = "fa-solid fa-cube"


class ClientAdmin(ModelView, model=models.Client):
    column_list = [models.Client.id, models.Client.name, models.Client.is_active, models.Client.created_at]
    form_columns = ["name", "is_active"]
    column_searchable_list = ["name"]
    column_sortable_list = ["name", "created_at"]
    name = "Client"
    name_plural = "Clients"
    icon = "fa-solid fa-building"


class ClientMappingAdmin(ModelView, model=models.ClientMapping):
    """Integration id / e-mail domain → client. Integration id wins over domain."""
    column_list = [
        models.ClientMapping.client,
        models.ClientMapping.integration_id,
        models.ClientMapping.email_domain,
        models.ClientMapping.sub_client,
        models.ClientMapping.sender_config,
        models.ClientMapping.is_active,
    ]
    form_columns = ["client", "integration_id", "email_domain", "sub_client", "sender_config", "is_active"]
    column_searchable_list = ["integration_id", "email_domain", "sub_client"]
    form_ajax_refs = {
        "client": {"fields": ["name"], "order_by": "name"},
        "sender_config": {"fields": ["name"], "order_by": "name"},
    }
    name = "Client Mapping"
    name_plural = "Client Mappings"
    icon = "fa-solid fa-link"


class SenderConfigurationAdmin(ModelView, model=models.SenderConfiguration):
    column_list = [
        models.SenderConfiguration.name,
        models.SenderConfiguration.client,
        models.SenderConfiguration.city,
        models.SenderConfiguration.country_code,
        models.SenderConfiguration.is_default,
        models.SenderConfiguration.is_active,
    ]
    form_columns = [
        "client", "name", "company", "email", "phone", "address_line1", "address_line2",
        "postal_code", "city", "country_code", "eori_number", "vat_number", "is_default", "is_active",
    ]
    column_searchable_list = ["name", "company"]
    form_ajax_refs = {"client": {"fields": ["name"], "order_by": "name"}}
    name = "Sender Configuration"
    name_plural = "Sender Configurations"
    icon = "fa-solid fa-address-card"


class SenderRuleAdmin(ModelView, model=models.SenderRule):
    """Highest priority first; equal priorities by creation time."""
    column_list = [
        models.SenderRule.name,
        models.SenderRule.client,
        models.SenderRule.condition_type,
        models.SenderRule.condition_value,
        models.SenderRule.sender_config,
        models.SenderRule.priority,
        models.SenderRule.is_active,
    ]
    form_columns = ["client", "name", "condition_type", "condition_value", "sender_config", "priority", "is_active"]
    column_searchable_list = ["name", "condition_value"]
    column_sortable_list = ["priority", "created_at"]
    form_ajax_refs = {
        "client": {"fields": ["name"], "order_by": "name"},
        "sender_config": {"fields": ["name"], "order_by": "name"},
    }
    name = "Sender Rule"
    name_plural = "Sender Rules"
    icon = "fa-solid fa-code-branch"


class WebhookLogAdmin(ModelView, model=models.WebhookLog):
    column_list = [
        models.WebhookLog.received_at,
        models.WebhookLog.source,
        models.WebhookLog.status,
        models.WebhookLog.order_id,
        models.WebhookLog.error,
    ]
    column_sortable_list = ["received_at", "status"]
    column_default_sort = ("received_at", True)
    can_create = False
    can_edit = False
    name = "Webhook Log"
    name_plural = "Webhook Logs"
    icon = "fa-solid fa-inbox"


class SyncRunAdmin(ModelView, model=models.SyncRun):
    column_list = [
        models.SyncRun.started_at,
        models.SyncRun.mode,
        models.SyncRun.status,
        models.SyncRun.orders_found,
        models.SyncRun.orders_created,
        models.SyncRun.orders_existing,
        models.SyncRun.orders_errors,
        models.SyncRun.duration_ms,
    ]
    column_sortable_list = ["started_at", "status"]
    column_default_sort = ("started_at", True)
    can_create = False
    can_edit = False
    name = "Sync Run"
    name_plural = "Sync Runs"
    icon = "fa-solid fa-rotate"


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="ordersync API",
        description="""
        Warehouse order synchronization service.

        - Batch order import with per-order outcome
        - SendCloud webhook (orders and parcel status changes)
        - SendCloud pulls and carrier selection run on the arq worker

        API routes require the `X-API-Key` header; the webhook uses its own
        shared token.
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    # Session middleware for admin panel authentication
    if settings.ADMIN_SECRET_KEY == "supersecretkey-change-this-in-production":
        logger.warning("[STARTUP] Using default admin secret key. Set ADMIN_SECRET_KEY for production.")
    app.add_middleware(SessionMiddleware, secret_key=settings.ADMIN_SECRET_KEY)

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(orders_router.router)
    app.include_router(sync_router.router)
    app.include_router(sendcloud_webhooks_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    admin = Admin(
        app,
        engine,
        title="ordersync Admin",
        authentication_backend=SimpleAuth(secret_key=settings.ADMIN_SECRET_KEY),
    )
    admin.add_view(OrderAdmin)
    admin.add_view(OrderLineAdmin)
    admin.add_view(ProductAdmin)
    admin.add_view(ClientAdmin)
    admin.add_view(ClientMappingAdmin)
    admin.add_view(SenderConfigurationAdmin)
    admin.add_view(SenderRuleAdmin)
    admin.add_view(WebhookLogAdmin)
    admin.add_view(SyncRunAdmin)

    return app


app = create_app()
