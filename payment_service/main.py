import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from common.error_handling import add_error_handlers
from common.schemas import CreatePaymentRequest, PaymentSession, SessionPage, SweepSummary
from common.settings import settings
from common.tracing import payments_tracer, tracing_middleware
from payment_service.event_stream import EventSubscription, format_sse
from payment_service.wiring import ServiceContainer, build_container

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "container", None) is None:
            app.state.container = build_container(settings)
            logger.info("🚀 Payment service started")
        yield

    app = FastAPI(title="Payment Session Service", version="1.0.0", lifespan=lifespan)
    app.state.container = container
    add_error_handlers(app)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, payments_tracer)

    def get_container(request: Request) -> ServiceContainer:
        return request.app.state.container

    @app.post("/payments", status_code=201, response_model=PaymentSession)
    async def create_payment(body: CreatePaymentRequest, c: ServiceContainer = Depends(get_container)):
        return await c.sessions.create_session(body)

    @app.get("/payments", response_model=SessionPage)
    async def list_payments(
        cursor: Optional[str] = None,
        limit: int = Query(20, ge=1, le=100),
        c: ServiceContainer = Depends(get_container),
    ):
        page = c.sessions.list_sessions(cursor=cursor, limit=limit)
        logger.debug(f"Listed {len(page.sessions)} payment sessions")
        return page

    @app.get("/payments/events")
    async def payment_events(c: ServiceContainer = Depends(get_container)):
        """Server-sent events feed of session transitions. Clients must tolerate gaps."""
        subscription = EventSubscription(
            c.event_source_factory(),
            maxsize=c.stream_queue_size,
            poll_timeout=c.stream_poll_timeout,
        )

        async def stream():
            async with subscription:
                async for event in subscription:
                    yield format_sse(event)

        return StreamingResponse(stream(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})

    @app.post("/payments/sweep", response_model=SweepSummary)
    async def sweep(c: ServiceContainer = Depends(get_container)):
        return await c.engine.run_sweep()

    @app.get("/payments/{session_id}", response_model=PaymentSession)
    async def get_payment(session_id: str, c: ServiceContainer = Depends(get_container)):
        session = await c.sessions.get_session(session_id)
        logger.debug(f"Payment session {session.id} status {session.status.value}")
        return session

    @app.get("/health")
    async def health(c: ServiceContainer = Depends(get_container)):
        timestamp = datetime.now(timezone.utc).isoformat()
        breakers = {name: b.get_state() for name, b in c.breakers.items()}
        if not c.store.ping():
            return JSONResponse(status_code=503, content={
                "status": "degraded",
                "service": "payments",
                "timestamp": timestamp,
                "error": "redis_unreachable",
                "circuit_breakers": breakers,
            })
        return {"status": "ok", "service": "payments", "timestamp": timestamp, "circuit_breakers": breakers}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
