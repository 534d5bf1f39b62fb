import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable, Mapping

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from commission_service.application.webhooks import WebhookIngressService
from commission_service.domain.models import WebhookEventStatus
from commission_service.infrastructure.metrics import HTTP_REQUEST_DURATION, HTTP_REQUESTS_TOTAL
from commission_service.infrastructure.paystack import SIGNATURE_HEADER


logger = structlog.get_logger()

HealthCheck = Callable[[], Awaitable[bool]]


def create_app(
    ingress: WebhookIngressService,
    health_checks: Mapping[str, HealthCheck] | None = None,
) -> FastAPI:
    """Create the FastAPI application serving the webhook, health and metrics endpoints."""
    app = FastAPI(
        title="Commission Service",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    checks = dict(health_checks or {})

    @app.middleware("http")
    async def record_metrics(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        start_time = time.perf_counter()
        status_code = "500"
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
            return response
        finally:
            route = request.scope.get("route")
            path = getattr(route, "path", "unmatched")
            duration = time.perf_counter() - start_time
            HTTP_REQUEST_DURATION.labels(method=request.method, path=path).observe(duration)
            HTTP_REQUESTS_TOTAL.labels(method=request.method, path=path, status_code=status_code).inc()

    @app.post("/payments/webhook")
    async def payment_webhook(request: Request) -> JSONResponse:
        """Gateway webhook: 200 accepted or duplicate, 400 rejected, 500 retry later."""
        raw_payload = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        try:
            result = await ingress.ingest(raw_payload, signature)
        except Exception as e:
            logger.error("webhook_processing_failed", error=str(e), exc_info=True)
            return JSONResponse(status_code=500, content={"status": "error"})

        if result.status == WebhookEventStatus.REJECTED:
            return JSONResponse(status_code=400, content={"status": result.status.value, "reason": result.reason})
        return JSONResponse(status_code=200, content={"status": result.status.value})

    @app.get("/health")
    async def health() -> JSONResponse:
        results = {name: await check() for name, check in checks.items()}
        healthy = all(results.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "checks": {name: "ok" if ok else "failing" for name, ok in results.items()},
            },
        )

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics() -> PlainTextResponse:
        """Prometheus metrics endpoint."""
        return PlainTextResponse(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    return app


class HttpServer:
    """Async HTTP server using uvicorn."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8000) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Start serving in the background."""
        config = uvicorn.Config(
            self._app,
            host=self._host,
            port=self._port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)

        self._task = asyncio.create_task(self._server.serve())
        logger.info("http_server_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        """Stop accepting requests and let in-flight ones finish."""
        if self._server:
            self._server.should_exit = True

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task

        logger.info("http_server_stopped")
