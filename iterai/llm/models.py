"""Shared LLM data models and provider contracts."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncGenerator, Literal, Required, Sequence, TypedDict

from msgspec import UNSET, field
from opentelemetry.context import Context

from iterai.errors import IterAIConfigurationError
from iterai.history import CompletionRole, Turn
from iterai.interface import Record, Unset


class LLMToolCallDelta(Record):
    """Incremental tool call fragment emitted during streaming."""

    index: int
    """Position of the call within the response; fragments are keyed by it."""

    call_id: str | None = None
    """Call id, usually present only on the first fragment."""

    name: str | None = None
    """Tool name, usually present only on the first fragment."""

    plugin_name: str | None = None

    arguments_delta: str = ""
    """Slice of JSON arguments appended to the buffered payload."""


class LLMToolCall(Record):
    """Normalized representation of a completed tool call."""

    call_id: str | None
    """Stable identifier used to correlate the call with its result."""

    name: str
    """Registered tool name the model wants to invoke."""

    plugin_name: str | None = None
    """Plugin the tool belongs to, when the backend reports one."""

    arguments: dict[str, Any] | None = None
    """Decoded arguments; None when the model sent no arguments."""

    parse_error: str | None = None
    """Set when the raw arguments could not be decoded as a JSON object."""


class LLMUsage(Record):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class LLMResponseMeta(Record):
    """Backend metadata attached to content events."""

    model: str | None = None
    completion_id: str | None = None
    system_fingerprint: str | None = None
    created_at: datetime | None = None


class LLMStreamChunk(Record):
    """One update read from a streaming backend call.

    Every field is optional; a chunk may carry any combination of them.
    """

    text_delta: str = ""
    role: CompletionRole | None = None
    tool_call_deltas: list[LLMToolCallDelta] = field(default_factory=list)
    usage: LLMUsage | None = None
    finish_reason: str | None = None
    meta: LLMResponseMeta | None = None
    error: BaseException | None = None
    """Backend-reported failure; the stream is treated as failed."""


class LLMResponse(Record):
    """Result of a synchronous backend call."""

    text: str = ""
    role: CompletionRole = "assistant"
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    usage: LLMUsage | None = None
    finish_reason: str | None = None
    meta: LLMResponseMeta = field(default_factory=LLMResponseMeta)


class LLMResponseFormat(Record):
    """Response format hint shared between the engine and providers."""

    type: Literal["json_object", "text", "json_schema"] = "text"

    name: str = "result"
    """Schema name reported to providers that require one."""

    schema: Unset[dict[str, Any]] = UNSET
    """JSON Schema payload for schema-constrained output."""


class LLMToolSpec(TypedDict):
    """Provider-neutral tool description."""

    name: str
    plugin_name: str | None
    description: str
    parameters: dict[str, Any]


type LLMToolChoice = Literal["auto", "none", "required"] | list[LLMToolSpec]


class LLMRequest(TypedDict, total=False):
    """Unified request bag accepted by all LLM adapters."""

    messages: Required[Sequence[Turn]]
    """Ordered conversation turns supplied to the provider."""

    model: str
    """Explicit provider model identifier overriding adapter defaults."""

    temperature: float
    """Randomness control applied by providers that support it."""

    top_p: float
    """Nucleus sampling threshold."""

    max_tokens: int
    """Maximum number of output tokens."""

    seed: int
    """Deterministic sampling seed."""

    tools: list[LLMToolSpec]
    """Tools the model may call."""

    tool_choice: LLMToolChoice
    """`required` as a list restricts the model to calling one of those tools."""

    response_format: LLMResponseFormat
    """Structured output constraint."""


class CompletionSettings(Record):
    """Execution settings for one run."""

    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 1.0
    stream: bool = False
    """Try the streaming call first, falling back to the synchronous one."""

    seed: bool = False
    """Send a seed derived from the conversation content."""

    model: str | None = None

    def __post_init__(self) -> None:
        if self.max_tokens < 1:
            raise IterAIConfigurationError(
                f"max_tokens must be >= 1, got {self.max_tokens}"
            )
        if not 0.0 <= self.top_p <= 1.0:
            raise IterAIConfigurationError(f"top_p must be in [0, 1], got {self.top_p}")
        if self.temperature < 0:
            raise IterAIConfigurationError(
                f"temperature must be >= 0, got {self.temperature}"
            )


class LLMProviderBase(ABC):
    """Model backend contract used by the completion engine."""

    @abstractmethod
    async def complete(
        self, request: LLMRequest, *, trace_ctx: Context | None = None
    ) -> LLMResponse:
        """Perform a synchronous (non-streaming) completion."""
        raise NotImplementedError

    @abstractmethod
    def stream(
        self, request: LLMRequest, *, trace_ctx: Context | None = None
    ) -> AsyncGenerator[LLMStreamChunk, None]:
        """Stream a completion chunk by chunk."""
        raise NotImplementedError
