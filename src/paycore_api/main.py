"""FastAPI application for the payments REST API.

Endpoints:
- Card payments (purchase, authorize, capture, void, refund)
- Subscriptions (create, update, cancel)
- Gateway webhooks (signed; recorded and queued for the consumer)
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI
from mangum import Mangum

from paycore.config import get_settings
from paycore.utils.logging import configure_logging, get_logger
from paycore_api.exceptions import register_exception_handlers
from paycore_api.middleware.correlation import CorrelationIdMiddleware
from paycore_api.routes import payments_router, subscriptions_router, webhooks_router

configure_logging(get_settings().log_level)
logger = get_logger(__name__)

app = FastAPI(
    title="Payments API",
    description="Card payments, subscriptions and gateway webhook intake",
    version="0.1.0",
)

app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)

app.include_router(payments_router, prefix="/api")
app.include_router(subscriptions_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")


@app.get("/api/ping")
async def ping() -> dict[str, Any]:
    """Health check."""
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat(),
        "service": "payments-api",
    }


# Lambda handler - Mangum wraps FastAPI for AWS Lambda + API Gateway
handler = Mangum(app, lifespan="off")


def run_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = True) -> None:
    """Run the API with uvicorn for local development."""
    import uvicorn

    if reload:
        # Use string reference for reload mode (uvicorn requirement)
        uvicorn.run("paycore_api.main:app", host=host, port=port, reload=True)
    else:
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
