"""
FastAPI application for the escalation engine.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ..config import EscalationConfig, load_config
from ..services.escalation_engine import EscalationEngine
from .routes import router

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_app(
    config: Optional[EscalationConfig] = None,
    engine: Optional[EscalationEngine] = None,
    start_background: bool = True
) -> FastAPI:
    """
    Build the API application.

    With no engine given, one is built from configuration (ESCALATION_CONFIG_FILE
    and ESCALATION_* variables) and the default rules are seeded into an empty
    rule store.
    """
    if engine is None:
        config = config or load_config()
        engine = EscalationEngine.from_config(config)
    config = config or engine.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        seeded = await engine.rule_store.seed_defaults()
        if seeded:
            logger.info(f"Seeded {seeded} default escalation rules")
        if start_background:
            await engine.start()
        try:
            yield
        finally:
            await engine.close()

    app = FastAPI(title="Incident Escalation Engine", lifespan=lifespan)
    app.state.engine = engine
    app.state.config = config
    app.include_router(router)
    return app


def main() -> FastAPI:
    """Application factory for `uvicorn --factory`."""
    import os

    config = load_config(os.environ.get("ESCALATION_CONFIG_FILE"))
    configure_logging(config.log_level)
    return create_app(config)
