from typing import Any, Sequence


class IterAIError(Exception):
    """Base exception class for iterai errors."""


class IterAIConfigurationError(IterAIError):
    """Raised when a component is misconfigured or given invalid settings."""


class UnannotatedToolParamError(IterAIConfigurationError):
    """Raised when a tool parameter does not use typing.Annotated."""


class IterAIValidationError(IterAIError):
    """Raised when inputs fail validation."""


class BackendError(IterAIError):
    """Wrapper for model backend failures surfaced as events."""

    def __init__(self, message: str, *, streamed: bool) -> None:
        super().__init__(message)
        self.streamed = streamed


class ToolInvocationError(IterAIError):
    """Raised when a tool cannot be resolved, decoded or invoked."""

    def __init__(self, message: str, *, call: Any = None) -> None:
        super().__init__(message)
        self.call = call


class StructuredDecodeError(IterAIError):
    """Raised when accumulated text cannot be decoded into the structured type."""

    def __init__(self, message: str, *, text: str) -> None:
        super().__init__(message)
        self.text = text


class HistoryIntegrityError(IterAIError):
    """Raised when a conversation violates call/result pairing rules."""


class MergeWorkerError(IterAIError):
    """Aggregates every worker failure of one merge chunk."""

    def __init__(self, errors: Sequence[BaseException]) -> None:
        self.errors = list(errors)
        summary = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"{len(self.errors)} merge worker(s) failed: {summary}")


__all__ = [
    "IterAIError",
    "IterAIConfigurationError",
    "UnannotatedToolParamError",
    "IterAIValidationError",
    "BackendError",
    "ToolInvocationError",
    "StructuredDecodeError",
    "HistoryIntegrityError",
    "MergeWorkerError",
]
