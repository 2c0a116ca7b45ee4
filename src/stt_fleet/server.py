"""FastAPI HTTP surface for the dispatch service.

Admission is synchronous: a request is either queued (202) or rejected
(429 when the queue is full, 400 when its deadline already passed). Results are
polled, optionally long-polling with ?wait=<seconds>.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from stt_fleet.audio import duration_seconds, pcm16_to_float32, validate_audio_format
from stt_fleet.constants import SAMPLE_RATE
from stt_fleet.errors import (
    AdmissionRejected,
    RequestExpired,
    RequestFailed,
    UnknownWorkerClass,
)
from stt_fleet.provisioning import WorkerEvent, WorkerEventKind
from stt_fleet.service import DispatchService


class SubmitBody(BaseModel):
    audio_duration_seconds: float = Field(gt=0)
    deadline_seconds: float
    priority: int = 0
    worker_class: str | None = None


class WorkerEventBody(BaseModel):
    kind: WorkerEventKind
    worker_class: str
    worker_id: str | None = None
    grace_seconds: float | None = Field(default=None, ge=0)
    detail: str = ""


def create_app(service: DispatchService) -> FastAPI:
    """Create a FastAPI application around the given service.

    Args:
        service: Dispatch service; started and stopped with the app.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = FastAPI(title="STT Fleet Dispatcher", lifespan=lifespan)

    def admit(**kwargs) -> dict:
        try:
            request_id = service.submit(**kwargs)
        except AdmissionRejected as e:
            code = 429 if e.reason == AdmissionRejected.QUEUE_FULL else 400
            raise HTTPException(status_code=code, detail={"reason": e.reason, "message": str(e)})
        except UnknownWorkerClass as e:
            raise HTTPException(status_code=400, detail=f"Unknown worker class {e.args[0]!r}")
        return {"id": request_id, "status": "queued"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok" if service.is_running else "stopped",
            "queue_depth": len(service.queue),
            "sample_rate": SAMPLE_RATE,
            "workers": service.dispatcher.worker_counts(),
        }

    @app.post("/v1/transcriptions", status_code=202)
    async def submit(body: SubmitBody):
        """Admit a request described by its metadata."""
        return admit(
            audio_duration_seconds=body.audio_duration_seconds,
            deadline_seconds=body.deadline_seconds,
            priority=body.priority,
            worker_class=body.worker_class,
        )

    @app.post("/v1/transcriptions/audio", status_code=202)
    async def submit_audio(
        request: Request,
        deadline_seconds: float = Query(...),
        priority: int = Query(0),
        worker_class: str | None = Query(None),
    ):
        """Admit raw PCM16 24kHz mono audio; the duration is taken from the body."""
        data = await request.body()
        if not validate_audio_format(data):
            raise HTTPException(status_code=400, detail="Invalid audio format (must be PCM16)")
        audio = pcm16_to_float32(data)
        return admit(
            audio_duration_seconds=duration_seconds(audio),
            deadline_seconds=deadline_seconds,
            priority=priority,
            worker_class=worker_class,
            audio=audio,
        )

    @app.get("/v1/transcriptions/{request_id}")
    async def get_transcription(request_id: str, wait: float = Query(0.0, ge=0, le=60)):
        """Request status and result; wait long-polls for a terminal status."""
        try:
            request = service.status(request_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Request not found. It may have expired.")
        if wait > 0:
            try:
                await service.result(request_id, timeout=wait)
            except (RequestExpired, RequestFailed, asyncio.TimeoutError):
                pass
        return request.to_dict()

    @app.get("/v1/capacity")
    async def capacity():
        """The current capacity plan."""
        plan = service.autoscaler.plan.to_dict()
        plan["degraded"] = sorted(service.autoscaler.degraded)
        return plan

    @app.get("/v1/metrics")
    async def metrics():
        return service.snapshot().to_dict()

    @app.post("/v1/workers/events", status_code=202)
    async def worker_event(body: WorkerEventBody):
        """Provisioning event feed."""
        if body.worker_class not in service.descriptors:
            raise HTTPException(status_code=400, detail=f"Unknown worker class {body.worker_class!r}")
        deadline = None
        if body.kind == WorkerEventKind.INTERRUPTION and body.grace_seconds is not None:
            deadline = service.now() + body.grace_seconds
        service.handle_worker_event(
            WorkerEvent(
                kind=body.kind,
                worker_class=body.worker_class,
                worker_id=body.worker_id,
                interruption_deadline=deadline,
                detail=body.detail,
            )
        )
        return {"accepted": True}

    return app


def app_factory() -> FastAPI:
    """Application built from environment settings.

    Serve with: uvicorn --factory stt_fleet.server:app_factory
    """
    from stt_fleet.config import get_settings
    from stt_fleet.logging_config import setup_root_logging

    settings = get_settings()
    setup_root_logging(settings.LOG_LEVEL)
    return create_app(DispatchService(settings))
