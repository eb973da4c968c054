import typing as typ


class CodingEngineError(Exception):
    """Base error for the coding resolution engine."""


class EmptyQueryError(CodingEngineError, ValueError):
    """Raised when a blank query reaches retrieval."""

    def __init__(self, message: str = "Query text cannot be empty.") -> None:
        super().__init__(message)


class RetrievalFailure(CodingEngineError):
    """Raised when the catalog store is unreachable or errors out."""


class LLMInvocationFailure(CodingEngineError):
    """Raised when a chat backend call fails."""

    def __init__(self, backend: str, reason: str = "") -> None:
        self.backend = backend
        message = f"Backend `{backend}` failed."
        if reason:
            message += f" Reason: {reason}"
        super().__init__(message)


class ResponseParseError(CodingEngineError):
    """Raised when a backend returns output that does not match the expected shape."""

    def __init__(self, reason: str, raw: str = "", **kwargs: typ.Any) -> None:
        self.raw = raw
        preview = raw[:200] + ("..." if len(raw) > 200 else "")
        message = f"Could not parse model response. Reason: {reason}"
        if preview:
            message += f" Content: `{preview}`"
        super().__init__(message, **kwargs)


class AgentExhaustedError(CodingEngineError):
    """Raised when the tool loop hits its round bound without a final answer."""

    def __init__(self, rounds: int) -> None:
        self.rounds = rounds
        super().__init__(f"Model did not produce a final answer after {rounds} rounds.")


class CodeValidationFailure(CodingEngineError):
    """Raised (or logged) when a returned code has no valid ancestor in the catalog."""

    def __init__(self, code: str, reason: str = "") -> None:
        self.code = code
        message = f"Code `{code}` could not be validated against the catalog."
        if reason:
            message += f" {reason}"
        super().__init__(message)


class CatalogUnavailable(CodingEngineError, RuntimeError):
    """Raised when a flow needs a catalog that was not loaded at startup."""

    def __init__(self, catalog: str) -> None:
        self.catalog = catalog
        super().__init__(f"The {catalog} catalog is not loaded; this operation is disabled.")
