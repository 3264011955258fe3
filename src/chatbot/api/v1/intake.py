"""Message intake endpoint.

POST /intake validates the raw payload, queues it on the tenant's queue,
and makes sure the tenant's worker is running. Errors use the
``{"error": message}`` body shape that platform webhooks expect.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from fastapi.responses import JSONResponse

from src.chatbot.api.deps import bind_request_tenant, get_pipeline
from src.chatbot.config import get_settings
from src.chatbot.core.errors import QueueError, ValidationError
from src.chatbot.core.tenant import tenant_scope
from src.chatbot.intake.validator import validate_payload
from src.chatbot.pipeline import Pipeline
from src.chatbot.services.telemetry import MetricType

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["intake"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _record_queue_length(pipeline: Pipeline, tenant_id: str) -> None:
    try:
        length = await pipeline.registry.queue_length(tenant_id)
    except QueueError as exc:
        logger.warning("queue_length_unavailable", tenant_id=tenant_id, error=str(exc))
        return
    await pipeline.telemetry.record(tenant_id, MetricType.QUEUE_LENGTH, length)


@router.post("/intake")
async def intake_message(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Validate and queue an inbound message.

    Returns 200 ``{"status": "queued", "messageId": ...}`` once the job is
    on the tenant's queue, 400 on a malformed payload, 500 if the queue
    is unavailable.
    """
    try:
        raw = await request.json()
    except ValueError:
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid request body")

    try:
        message = validate_payload(raw, default_platform=get_settings().DEFAULT_PLATFORM)
    except ValidationError as exc:
        logger.info("intake_rejected", field=exc.field, error=exc.message)
        return _error(status.HTTP_400_BAD_REQUEST, exc.message)

    bind_request_tenant(request, message.tenant_id)
    with tenant_scope(message.tenant_id):
        try:
            job = await pipeline.registry.enqueue(message.tenant_id, message)
        except QueueError:
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error")
        pipeline.touch(message.tenant_id)

        try:
            await pipeline.registry.ensure_worker(message.tenant_id, pipeline.dispatcher.handle)
        except QueueError as exc:
            # The job is durable on the queue; a later intake restarts the worker.
            logger.error("worker_start_failed", job_id=job.id, error=str(exc))

    background_tasks.add_task(_record_queue_length, pipeline, message.tenant_id)
    return {"status": "queued", "messageId": job.id}
