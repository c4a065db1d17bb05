"""
FastAPI Application — Admin and scheduling control surface.

Provides:
- Config read/replace per environment (optimistic versioning)
- Admin CRUD for templates and rules, plus the notification wizard endpoint
- Scheduling triggers for subscription due dates and payment events
- Health and catalog endpoints

Errors leave as {"error": code, "message": ...}: validation codes → 400,
not found → 404, version conflicts → 409.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from backend.connector import BillingConnector, create_billing_connector
from channels.base import ChannelAdapter
from channels.messaging_adapter import MessagingAdapter
from config.settings import Settings, get_settings
from core.dispatcher import SchedulingDispatcher
from database.store_base import BaseConfigStore
from database.store_factory import create_store
from job_queue.message_queue import NotificationQueue, create_notification_queue
from models.errors import ConfigValidationError, NotificationError
from models.schemas import CamelModel, Environment, NotificationConfig, RuleConditions
from rules.catalog import list_kinds
from rules.compiler import OffsetInput, RuleCompiler, TemplateInput, TimingInput

logger = structlog.get_logger()

ERROR_STATUS = {
    "not_found": 404,
    "subscription_not_found": 404,
    "payment_not_found": 404,
    "version_conflict": 409,
    "billing_error": 502,
}


def _truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class ConfigPutRequest(CamelModel):
    environment: Optional[str] = None
    config: dict[str, Any]
    expected_version: Optional[int] = None


class NotificationCreateRequest(CamelModel):
    environment: Optional[str] = None
    kind: Optional[str] = None
    template: TemplateInput = TemplateInput()
    timing: TimingInput = TimingInput()


class TextTemplateRequest(CamelModel):
    environment: Optional[str] = None
    name: str = ""
    content: str = ""


class StructuredTemplateRequest(CamelModel):
    environment: Optional[str] = None
    name: str = ""
    template_name: str = ""
    language: str = ""
    params: list[str] = []


class RuleCreateRequest(CamelModel):
    environment: Optional[str] = None
    name: str = ""
    trigger: str = ""
    template_id: str = ""
    offsets: list[OffsetInput] = []
    offsets_seconds: Optional[list[Any]] = None
    at_time_utc: Optional[str] = None
    conditions: Optional[RuleConditions] = None
    ensure_payment_link: Optional[bool] = None
    enabled: bool = True


class RuleToggleRequest(CamelModel):
    environment: Optional[str] = None
    enabled: Optional[bool] = None


# ══════════════════════════════════════════════════════════════
#  APP FACTORY
# ══════════════════════════════════════════════════════════════

def create_app(
    store: BaseConfigStore = None,
    billing: BillingConnector = None,
    queue: NotificationQueue = None,
    channel: ChannelAdapter = None,
    settings: Settings = None,
) -> FastAPI:
    """Wire collaborators (from settings unless given) into a FastAPI app."""
    settings = settings or get_settings()
    store = store or create_store(settings.database)
    billing = billing or create_billing_connector(settings.billing)
    queue = queue or create_notification_queue({
        "backend": settings.queue.backend,
        "redis_url": settings.queue.redis_url,
        "key": settings.queue.key,
    })
    channel = channel or MessagingAdapter(settings.channel)

    compiler = RuleCompiler(store)
    dispatcher = SchedulingDispatcher(store, billing, queue, channel, settings=settings)

    def env_or_default(environment: Optional[str]) -> Environment:
        return Environment.parse(environment or settings.notifications.active_environment)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.open()
        await queue.connect()
        logger.info("notifier_started",
                    store_backend=type(store).__name__,
                    queue_backend=type(queue).__name__,
                    environment=settings.notifications.active_environment)
        yield
        await queue.close()
        await billing.close()
        await channel.shutdown()
        await store.close()
        logger.info("notifier_stopped")

    app = FastAPI(
        title="Subscription Notifier API",
        description="Notification scheduling and templating for subscription billing",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = store
    app.state.queue = queue
    app.state.channel = channel
    app.state.billing = billing
    app.state.dispatcher = dispatcher
    app.state.compiler = compiler

    # ── Error mapping ─────────────────────────────────────────

    @app.exception_handler(NotificationError)
    async def notification_error_handler(request: Request, exc: NotificationError):
        status = ERROR_STATUS.get(exc.code, 400)
        if status >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(status_code=status, content={"error": exc.code, "message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "invalid_config", "message": str(exc.errors()[:3])},
        )

    # ══════════════════════════════════════════════════════════
    #  HEALTH & CATALOG
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.notifications.active_environment,
            "queue_length": await queue.queue_length(),
            "channel": await channel.health_check(),
        }

    @app.get("/notification-kinds")
    async def notification_kinds():
        return {"kinds": list_kinds()}

    # ══════════════════════════════════════════════════════════
    #  CONFIG
    # ══════════════════════════════════════════════════════════

    @app.get("/config")
    async def get_config(environment: Optional[str] = None):
        env = env_or_default(environment)
        config = await store.get_or_default(env)
        return {"environment": env.value, "config": config.to_dict()}

    @app.put("/config")
    async def put_config(req: ConfigPutRequest):
        env = env_or_default(req.environment)
        try:
            config = NotificationConfig.model_validate(req.config)
        except ValidationError as e:
            raise ConfigValidationError("invalid_config", str(e.errors()[:3])) from e
        stored = await store.put(env, config, expected_version=req.expected_version)
        return {"ok": True, "config": stored.to_dict()}

    # ══════════════════════════════════════════════════════════
    #  ADMIN: TEMPLATES & RULES
    # ══════════════════════════════════════════════════════════

    @app.post("/notifications")
    async def create_notification(req: NotificationCreateRequest):
        template, rule = await compiler.create_notification(
            env_or_default(req.environment), req.kind, req.template, req.timing,
        )
        return {"ok": True, "template": template.to_dict(), "rule": rule.to_dict()}

    @app.post("/templates/text")
    async def add_text_template(req: TextTemplateRequest):
        template = await compiler.add_text_template(env_or_default(req.environment), req.name, req.content)
        return {"ok": True, "template": template.to_dict()}

    @app.post("/templates/structured")
    async def add_structured_template(req: StructuredTemplateRequest):
        template = await compiler.add_structured_template(
            env_or_default(req.environment), req.name, req.template_name, req.language, req.params,
        )
        return {"ok": True, "template": template.to_dict()}

    @app.delete("/templates/{template_id}")
    async def delete_template(template_id: str, environment: Optional[str] = None):
        removed = await compiler.delete_template(env_or_default(environment), template_id)
        return {"ok": True, "rulesRemoved": removed}

    @app.post("/rules")
    async def add_rule(req: RuleCreateRequest):
        rule = await compiler.add_rule(
            env_or_default(req.environment),
            name=req.name,
            trigger=req.trigger,
            template_id=req.template_id,
            offsets=req.offsets,
            offsets_seconds=req.offsets_seconds,
            at_time_utc=req.at_time_utc,
            conditions=req.conditions,
            ensure_payment_link=req.ensure_payment_link,
            enabled=req.enabled,
        )
        return {"ok": True, "rule": rule.to_dict()}

    @app.post("/rules/{rule_id}/toggle")
    async def toggle_rule(rule_id: str, req: Optional[RuleToggleRequest] = None):
        req = req or RuleToggleRequest()
        rule = await compiler.toggle_rule(env_or_default(req.environment), rule_id, req.enabled)
        return {"ok": True, "rule": rule.to_dict()}

    @app.delete("/rules/{rule_id}")
    async def delete_rule(rule_id: str, environment: Optional[str] = None):
        await compiler.delete_rule(env_or_default(environment), rule_id)
        return {"ok": True}

    # ══════════════════════════════════════════════════════════
    #  SCHEDULING
    # ══════════════════════════════════════════════════════════

    @app.post("/schedule/subscription/{subscription_id}")
    async def schedule_subscription(
        subscription_id: str,
        force_now: Optional[str] = Query(None, alias="forceNow"),
        environment: Optional[str] = None,
    ):
        result = await dispatcher.schedule_for_subscription(
            subscription_id, env_or_default(environment), force_now=_truthy(force_now),
        )
        return {"ok": True, "scheduled": result.scheduled_count}

    @app.post("/schedule/payment/{payment_id}")
    async def schedule_payment(
        payment_id: str,
        force_now: Optional[str] = Query(None, alias="forceNow"),
        environment: Optional[str] = None,
    ):
        result = await dispatcher.schedule_for_payment(
            payment_id, env_or_default(environment), force_now=_truthy(force_now),
        )
        return {"ok": True, "scheduled": result.scheduled_count}

    @app.post("/schedule/payment-link/{payment_id}")
    async def schedule_payment_link(
        payment_id: str,
        force_now: Optional[str] = Query(None, alias="forceNow"),
        environment: Optional[str] = None,
    ):
        result = await dispatcher.schedule_for_payment_link(
            payment_id, env_or_default(environment), force_now=_truthy(force_now),
        )
        return {"ok": True, "scheduled": result.scheduled_count}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=get_settings().debug)
