"""FastAPI application exposing a single consumer tick for schedulers without a long-lived process."""

from __future__ import annotations

import hmac
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from signalrelay.core.config import Settings, get_settings
from signalrelay.core.logging import get_logger, setup_logging
from signalrelay.core.models import ItemOutcome, utcnow
from signalrelay.services.consumer import ConsumerLoop, create_consumer

logger = get_logger(__name__)


class RunConsumerResponse(BaseModel):
    ok: bool
    processed: int
    results: List[ItemOutcome]
    correlation_id: Optional[str] = None


def _authorized(expected: Optional[str], supplied: Optional[str]) -> bool:
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode(), supplied.encode())


def build_app(settings: Settings | None = None, consumer: ConsumerLoop | None = None) -> FastAPI:
    """Create a configured FastAPI instance."""
    settings = settings or get_settings()
    consumer = consumer or create_consumer(settings)

    app = FastAPI(title="signalrelay", version="0.1.0")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        results = consumer.perform_health_checks()
        return {
            "status": "ok" if results.get("overall_status") == "healthy" else "degraded",
            "checks": results,
            "timestamp": utcnow().isoformat(),
        }

    @app.api_route("/run-consumer", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    def run_consumer(
        request: Request,
        x_admin_token: Optional[str] = Header(default=None),
        token: Optional[str] = Query(default=None),
    ):
        if not _authorized(settings.api.admin_token, x_admin_token or token):
            logger.warning("Unauthorized run-consumer call", client=getattr(request.client, "host", None))
            return JSONResponse(status_code=401, content={"error": "unauthorized"})

        if request.method != "POST":
            return JSONResponse(status_code=405, content={"error": "method not allowed"})

        result = consumer.tick()
        if not result.ok:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": result.error_message,
                    "correlation_id": result.correlation_id,
                },
            )

        return RunConsumerResponse(
            ok=True,
            processed=len(result.outcomes),
            results=result.outcomes,
            correlation_id=result.correlation_id,
        )

    return app


def main() -> None:
    settings = get_settings()
    setup_logging(debug=settings.debug, rich_output=not settings.json_logs)
    app = build_app(settings)
    uvicorn.run(
        app,
        host=settings.api.host,
        port=settings.api.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
