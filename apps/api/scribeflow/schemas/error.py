"""API error response schemas."""

from typing import Any
from typing import Literal

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class NoLeakNotFoundError(BaseModel):
    code: Literal["RESOURCE_NOT_FOUND"]
    message: str


class InputNotFoundError(BaseModel):
    code: Literal["INPUT_NOT_FOUND"]
    message: str
    details: dict[str, Any] | None = None


class QueueBusyError(BaseModel):
    code: Literal["QUEUE_ALREADY_PROCESSING"]
    message: str


class JobNotRequeueableError(BaseModel):
    code: Literal["JOB_NOT_REQUEUEABLE", "DUPLICATE_CONTENT", "ALREADY_PROCESSED"]
    message: str
    details: dict[str, Any] | None = None
