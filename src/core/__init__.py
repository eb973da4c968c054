from core.errors import (
    AgentExhaustedError,
    CodeValidationFailure,
    CodingEngineError,
    EmptyQueryError,
    LLMInvocationFailure,
    ResponseParseError,
    RetrievalFailure,
)
from core.settings import Settings, get_settings

__all__ = [
    "AgentExhaustedError",
    "CodeValidationFailure",
    "CodingEngineError",
    "EmptyQueryError",
    "LLMInvocationFailure",
    "ResponseParseError",
    "RetrievalFailure",
    "Settings",
    "get_settings",
]
