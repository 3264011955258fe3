"""Per-job processing: retrieval, prompt, LLM call, parse, reply.

The Dispatcher is the processor each tenant worker runs. Every stage
degrades instead of failing the job:
- embedding or retrieval failure -> empty context
- LLM failure or timeout -> canned apology with intent "error"
- unparsable model output -> plain text or greeting
- anything else -> fallback apology is still delivered
so a job always completes and the tenant's queue keeps moving.
"""

from __future__ import annotations

import time

import structlog

from src.chatbot.core.monitoring import prompt_injections_total
from src.chatbot.dispatch.parsing import (
    llm_error_response,
    parse_llm_output,
    processing_error_response,
)
from src.chatbot.dispatch.prompts import build_prompt
from src.chatbot.dispatch.schemas import GeneratedResponse
from src.chatbot.queue.schemas import Job, NormalizedMessage
from src.chatbot.services.kb_expiry import KnowledgeBaseExpiry
from src.chatbot.services.llm import LLMClient, detect_prompt_injection
from src.chatbot.services.reply import ReplyRouter
from src.chatbot.services.telemetry import MetricType, TelemetryRecorder
from src.knowledge.embeddings import Embedder
from src.knowledge.qdrant_client import QdrantKnowledgeStore

logger = structlog.get_logger(__name__)


class Dispatcher:
    """Turns a queued Job into a delivered reply.

    Args:
        embedder: Text embedding capability (same model as the KB).
        store: Tenant-scoped vector store.
        llm: LLM backend client.
        router: Outbound reply router.
        telemetry: Per-tenant metric recorder.
        top_k: Number of context chunks retrieved per message.
        kb_expiry: Optional inactivity tracker; retrieval counts as activity.
    """

    def __init__(
        self,
        embedder: Embedder,
        store: QdrantKnowledgeStore,
        llm: LLMClient,
        router: ReplyRouter,
        telemetry: TelemetryRecorder,
        *,
        top_k: int = 3,
        kb_expiry: KnowledgeBaseExpiry | None = None,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._llm = llm
        self._router = router
        self._telemetry = telemetry
        self._top_k = top_k
        self._kb_expiry = kb_expiry

    async def handle(self, job: Job) -> GeneratedResponse:
        """Process a job end to end and deliver the reply. Never raises.

        Records response_time (ms) and message_count on completion. If
        anything escapes processing, the fallback apology is sent and an
        error metric is recorded instead.
        """
        message = job.message
        start = time.perf_counter()

        with structlog.contextvars.bound_contextvars(job_id=job.id):
            try:
                response = await self.process_message(job)
                delivered = await self._router.dispatch(
                    message.tenant_id,
                    message.user_id,
                    message.platform,
                    response.text,
                )
            except Exception as exc:
                logger.exception("job_failed_fallback_sent", error=str(exc))
                self._telemetry.log(
                    message.tenant_id,
                    MetricType.ERROR,
                    1,
                    {"stage": "dispatch", "message": str(exc)},
                )
                fallback = processing_error_response()
                await self._router.dispatch(
                    message.tenant_id,
                    message.user_id,
                    message.platform,
                    fallback.text,
                )
                return fallback

            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            self._telemetry.log(message.tenant_id, MetricType.RESPONSE_TIME, duration_ms)
            self._telemetry.log(message.tenant_id, MetricType.MESSAGE_COUNT, 1)

            logger.info(
                "job_completed",
                intent=response.intent,
                language=response.language,
                delivered=delivered,
                duration_ms=duration_ms,
                attempt=job.attempt_count,
            )
            return response

    async def process_message(self, job: Job) -> GeneratedResponse:
        """Retrieve context, prompt the LLM, and parse its reply. Never raises."""
        message = job.message
        try:
            context = await self._retrieve_context(message)
            is_injection, pattern = detect_prompt_injection(message.text)
            if is_injection:
                prompt_injections_total.labels(tenant_id=message.tenant_id, pattern=pattern).inc()
            prompt = build_prompt(message.text, context)
            return await self._generate(message.tenant_id, prompt)
        except Exception as exc:
            logger.exception("message_processing_failed", error=str(exc))
            self._telemetry.log(
                message.tenant_id,
                MetricType.ERROR,
                1,
                {"stage": "processing", "message": str(exc)},
            )
            return processing_error_response()

    async def _retrieve_context(self, message: NormalizedMessage) -> list[str]:
        """Top-K chunks for the message; empty if embedding or retrieval fails."""
        if self._kb_expiry is not None:
            self._kb_expiry.touch(message.tenant_id)
        try:
            vector = await self._embedder.embed(message.text)
            context = await self._store.retrieve_top_k(message.tenant_id, vector, self._top_k)
        except Exception as exc:
            logger.warning("retrieval_degraded", error=str(exc))
            self._telemetry.log(
                message.tenant_id,
                MetricType.ERROR,
                1,
                {"stage": "retrieval", "message": str(exc)},
            )
            return []

        logger.debug("context_retrieved", chunks=len(context))
        return context

    async def _generate(self, tenant_id: str, prompt: str) -> GeneratedResponse:
        try:
            raw = await self._llm.generate(prompt, tenant_id=tenant_id)
        except Exception as exc:
            logger.error("llm_call_failed", error=str(exc))
            self._telemetry.log(
                tenant_id,
                MetricType.ERROR,
                1,
                {"stage": "llm", "message": str(exc)},
            )
            return llm_error_response()

        return parse_llm_output(raw)
