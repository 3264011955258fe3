"""Error taxonomy for the message pipeline.

Only ValidationError and QueueError are visible to intake callers. Every
other error is raised inside a component and absorbed by the Dispatcher,
ReplyRouter, or TelemetryRecorder once a job has been queued.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline errors."""


class ValidationError(PipelineError, ValueError):
    """Inbound payload is malformed. Client error, never retried."""

    def __init__(self, message: str, field: str = "unknown") -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class QueueError(PipelineError):
    """Queue transport was unavailable at enqueue time. Retryable."""


class RetrievalError(PipelineError):
    """Vector store or embedding step failed during processing."""


class VectorStoreError(PipelineError):
    """Administrative vector store operation (load/delete) failed."""


class LLMError(PipelineError):
    """LLM backend returned an error, timed out, or sent an unusable body."""


class ReplyDispatchError(PipelineError):
    """Outbound delivery to a messaging platform failed."""


class TelemetryError(PipelineError):
    """Telemetry storage write or read failed."""
