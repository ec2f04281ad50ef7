"""
Entry point for the rule engine service.

This module creates the FastAPI application, includes all API routers and
prepares the database on startup. Run with:

    uvicorn rule_engine.main:app --reload

"""

from __future__ import annotations

import logging
from fastapi import FastAPI

from .core.db import engine
from .core.logging_config import setup_logging
from .models import Base
from .ingest.mqtt_consumer import MQTTConsumer
from .scripts.run_migrations import run_migrations_to_head
from .services.action_dispatch import action_registry

from .api import api_router
from .core.config import settings, get_app_env
from .core.errors import log_exception, register_exception_handlers


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title="Rule Engine", version="0.1.0")
    app.include_router(api_router)
    register_exception_handlers(app)
    app.state.mqtt_consumer = None

    @app.on_event("startup")
    def _init_db() -> None:
        logger = logging.getLogger("startup")
        env = get_app_env()
        if settings.auto_create_db:
            try:
                Base.metadata.create_all(bind=engine)
            except Exception as exc:
                log_exception(logger, "DB create_all failed", exc=exc)
                if env == "prod":
                    raise
        if settings.auto_run_migrations:
            try:
                run_migrations_to_head()
            except Exception as exc:
                log_exception(logger, "DB migrations failed", exc=exc)
                if env == "prod":
                    raise
        if settings.enable_mqtt_consumer:
            consumer = MQTTConsumer()
            consumer.start()
            app.state.mqtt_consumer = consumer
        logger.info("Rule engine started env=%s action_types=%s", env, action_registry.action_types())

    @app.on_event("shutdown")
    def _shutdown() -> None:
        consumer = getattr(app.state, "mqtt_consumer", None)
        if consumer:
            consumer.stop()

    return app


app = create_app()
