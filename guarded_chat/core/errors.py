"""
Pipeline error taxonomy.

Every failure the chat pipeline surfaces to a client is one of a closed set
of kinds, each carrying the HTTP status it maps to.
"""

from enum import Enum
from typing import Any, Dict


class ErrorKind(Enum):
    """Closed set of client-visible failure kinds."""
    AUTH = ("auth_error", 401)
    QUOTA_EXCEEDED = ("quota_exceeded", 429)
    PROMPT_BUDGET = ("prompt_budget_error", 400)
    CONFIGURATION = ("configuration_error", 500)
    RETRIEVAL = ("retrieval_error", 500)
    GENERATION_STREAM = ("generation_stream_error", 500)

    def __init__(self, type_name: str, status_code: int):
        self.type_name = type_name
        self.status_code = status_code


class PipelineError(Exception):
    """Base class for pipeline failures with a structured kind."""
    kind: ErrorKind = ErrorKind.CONFIGURATION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def status_code(self) -> int:
        return self.kind.status_code


class AuthError(PipelineError):
    """Raised when the caller cannot be authenticated."""
    kind = ErrorKind.AUTH


class QuotaExceeded(PipelineError):
    """Raised when a user has used up their token quota for a model."""
    kind = ErrorKind.QUOTA_EXCEEDED


class PromptBudgetError(PipelineError):
    """Raised when no usable prompt fits inside the model's context limit."""
    kind = ErrorKind.PROMPT_BUDGET


class ConfigurationError(PipelineError):
    """Raised for deployment defects such as an unknown model id."""
    kind = ErrorKind.CONFIGURATION


class RetrievalError(PipelineError):
    """Raised when embedding or similarity search fails."""
    kind = ErrorKind.RETRIEVAL


class GenerationStreamError(PipelineError):
    """Raised when the generation service fails to open or breaks mid-stream."""
    kind = ErrorKind.GENERATION_STREAM


def error_response_body(error: BaseException) -> Dict[str, Any]:
    """Build the JSON error body returned before any stream bytes are sent.

    Unknown exceptions collapse to a generic internal error so that
    upstream details are never leaked to the client.
    """
    if isinstance(error, PipelineError):
        return {"error": {"message": error.message, "type": error.kind.type_name}}
    return {"error": {"message": "Internal server error", "type": "internal_error"}}


def status_code_for(error: BaseException) -> int:
    """HTTP status code for an exception raised before streaming began."""
    if isinstance(error, PipelineError):
        return error.status_code
    return 500
