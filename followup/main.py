import logging

import uvicorn

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from followup.core.config import settings as core_settings
from followup.reminders.api import register_exception_handlers, router as reminders_router
from followup.reminders.config import settings


logging.basicConfig(
    level=getattr(logging, core_settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    filename=core_settings.LOG_FILE,
)


def create_app() -> FastAPI:
    app = FastAPI(title=core_settings.PROJECT_NAME, version=core_settings.VERSION)
    app.include_router(reminders_router, prefix=f"{core_settings.API_V1_STR}/reminders", tags=["reminders"])
    register_exception_handlers(app)
    if settings.METRICS_ENABLED:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("followup.main:app", host=core_settings.SERVER_HOST, port=core_settings.SERVER_PORT)
