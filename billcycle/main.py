import logging

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from billcycle.api.billing import router as billing_router
from billcycle.api.catalog import router as catalog_router
from billcycle.api.subscriptions import router as subscriptions_router
from billcycle.errors import register_error_handlers
from billcycle.logging import configure_logging
from billcycle.observability import ObservabilityMiddleware

app = FastAPI(title="billcycle API")
logger = logging.getLogger(__name__)
configure_logging()
app.add_middleware(ObservabilityMiddleware)
register_error_handlers(app)


def _include_api_router(router, dependencies=None):
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(catalog_router)
_include_api_router(subscriptions_router)
_include_api_router(billing_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
