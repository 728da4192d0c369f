"""FastAPI health endpoints reporting the mailbox session state."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import HealthStatus, SessionState

if TYPE_CHECKING:
    from .service import InboxTriggerService

_UNHEALTHY_STATES = (SessionState.FAILED, SessionState.ENDING)


def create_health_app(service: InboxTriggerService) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes.

    ``/health`` answers 503 while the session is failed or ending, so a
    liveness probe only trips when reconnects keep failing.  ``/ready``
    answers 200 only while a mailbox session is ready.
    """
    app = FastAPI(title=f"{service.config.name} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        supervisor = service.supervisor
        watcher = service.watcher
        status = HealthStatus(
            service_name=service.config.name,
            state=supervisor.state,
            reconnect_attempts=supervisor.reconnect_attempts,
            uptime_seconds=time.monotonic() - service.start_time,
            last_check_at=watcher.last_check_at,
            details={
                "mailbox": supervisor.mailbox,
                "checks_completed": watcher.checks_completed,
                "messages_matched": watcher.messages_matched,
                "dispatch_failures": watcher.dispatch_failures,
                "check_in_flight": watcher.in_flight,
            },
        )
        code = 503 if supervisor.state in _UNHEALTHY_STATES else 200
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.supervisor.is_ready
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
