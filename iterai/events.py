"""Result events yielded by the completion engine."""

from datetime import datetime
from typing import Any, ClassVar, Literal

from iterai.interface import Record
from iterai.llm.models import LLMResponseMeta, LLMUsage

ResultEventType = Literal[
    "completion.call.begin",
    "completion.text.delta",
    "completion.finish_reason",
    "completion.usage",
    "completion.tool.requested",
    "completion.tool.partial_result",
    "completion.tool.result",
    "completion.tool.failed",
    "completion.backend.failed",
    "completion.iteration.complete",
    "completion.structured_result",
]


class ResultEventBase(Record, kw_only=True):
    """Base class shared by all emitted result events."""

    EVENT_TYPE: ClassVar[ResultEventType]

    @property
    def event_type(self) -> ResultEventType:
        return self.EVENT_TYPE


class ResponseEventBase(ResultEventBase, kw_only=True):
    """Events derived from a backend response; carry its metadata."""

    streamed: bool
    """Whether the producing backend call was the streaming one."""

    model: str | None = None
    completion_id: str | None = None
    system_fingerprint: str | None = None
    created_at: datetime | None = None


class CallBegin(ResultEventBase, kw_only=True):
    EVENT_TYPE = "completion.call.begin"
    streamed: bool


class TextDelta(ResponseEventBase, kw_only=True):
    EVENT_TYPE = "completion.text.delta"
    text: str


class FinishReason(ResponseEventBase, kw_only=True):
    EVENT_TYPE = "completion.finish_reason"
    reason: str


class Usage(ResponseEventBase, kw_only=True):
    EVENT_TYPE = "completion.usage"
    input_tokens: int
    output_tokens: int
    total_tokens: int


class ToolCallRequested(ResultEventBase, kw_only=True):
    EVENT_TYPE = "completion.tool.requested"
    id: str | None
    name: str
    plugin_name: str | None = None
    arguments: dict[str, Any] | None = None
    streamed: bool


class ToolEventBase(ResultEventBase, kw_only=True):
    id: str | None
    name: str
    plugin_name: str | None = None


class ToolCallPartialResult(ToolEventBase, kw_only=True):
    EVENT_TYPE = "completion.tool.partial_result"
    value: Any


class ToolCallResult(ToolEventBase, kw_only=True):
    EVENT_TYPE = "completion.tool.result"
    value: Any
    """Tool return value; a list of every item when the tool streamed."""


class ToolCallFailed(ToolEventBase, kw_only=True):
    EVENT_TYPE = "completion.tool.failed"
    error: BaseException


class BackendCallFailed(ResultEventBase, kw_only=True):
    EVENT_TYPE = "completion.backend.failed"
    error: BaseException
    streamed: bool


class CalledTool(Record):
    id: str | None
    name: str
    plugin_name: str | None = None


class IterationComplete(ResultEventBase, kw_only=True):
    """Terminates one iteration (a backend pass plus its tool batch)."""

    EVENT_TYPE = "completion.iteration.complete"
    iteration_index: int
    streamed: bool
    called_tools: list[CalledTool]
    is_empty_response: bool = False
    is_error: bool = False


class StructuredResult(ResultEventBase, kw_only=True):
    EVENT_TYPE = "completion.structured_result"
    value: Any
    created_at: datetime
    streamed: bool


type ResultEvent = (
    CallBegin
    | TextDelta
    | FinishReason
    | Usage
    | ToolCallRequested
    | ToolCallPartialResult
    | ToolCallResult
    | ToolCallFailed
    | BackendCallFailed
    | IterationComplete
    | StructuredResult
)


class ResultEventBuilder:
    """Stamps the streamed flag and response metadata onto events."""

    __slots__ = ("streamed", "meta")

    def __init__(self, *, streamed: bool, meta: LLMResponseMeta | None = None):
        self.streamed = streamed
        self.meta = meta or LLMResponseMeta()

    def _meta_fields(self) -> dict[str, Any]:
        return dict(
            streamed=self.streamed,
            model=self.meta.model,
            completion_id=self.meta.completion_id,
            system_fingerprint=self.meta.system_fingerprint,
            created_at=self.meta.created_at,
        )

    def call_begin(self) -> CallBegin:
        return CallBegin(streamed=self.streamed)

    def text_delta(self, text: str) -> TextDelta:
        return TextDelta(text=text, **self._meta_fields())

    def finish_reason(self, reason: str) -> FinishReason:
        return FinishReason(reason=reason, **self._meta_fields())

    def usage(self, usage: LLMUsage) -> Usage:
        return Usage(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            **self._meta_fields(),
        )

    def backend_failed(self, error: BaseException) -> BackendCallFailed:
        return BackendCallFailed(error=error, streamed=self.streamed)

    def tool_requested(
        self,
        *,
        call_id: str | None,
        name: str,
        plugin_name: str | None,
        arguments: dict[str, Any] | None,
    ) -> ToolCallRequested:
        return ToolCallRequested(
            id=call_id,
            name=name,
            plugin_name=plugin_name,
            arguments=arguments,
            streamed=self.streamed,
        )

    def iteration_complete(
        self,
        *,
        iteration_index: int,
        called_tools: list[CalledTool] | None = None,
        is_empty_response: bool = False,
        is_error: bool = False,
    ) -> IterationComplete:
        return IterationComplete(
            iteration_index=iteration_index,
            streamed=self.streamed,
            called_tools=called_tools or [],
            is_empty_response=is_empty_response,
            is_error=is_error,
        )
