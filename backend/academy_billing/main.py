from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from academy_billing.api.routes import billing, health, internal, notifications, webhooks
from academy_billing.core.config import settings
from academy_billing.core.logging_setup import logger
from academy_billing.db.session import init_db


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
    init_db()
    yield


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.project_name,
        debug=settings.debug,
        lifespan=lifespan,
    )

    application.include_router(health.router, prefix="/health")
    application.include_router(internal.router, prefix=settings.api_v1_str)
    application.include_router(billing.router, prefix=settings.api_v1_str)
    application.include_router(notifications.router, prefix=settings.api_v1_str)
    application.include_router(webhooks.router, prefix=settings.api_v1_str)

    logger.info("%s initialised", settings.project_name)
    return application


app = create_app()
