from base64 import b64encode
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Sequence

from msgspec.json import encode as msg_encode
from openai import AsyncOpenAI
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import SpanKind

from iterai.helpers.tool_call_buffer import decode_arguments
from iterai.history import (
    AudioTurn,
    CollectionTurn,
    ImageTurn,
    TextTurn,
    ToolCallTurn,
    ToolResultTurn,
    Turn,
)
from iterai.interface import MISSING, is_present, is_set

from .models import (
    LLMProviderBase,
    LLMRequest,
    LLMResponse,
    LLMResponseFormat,
    LLMResponseMeta,
    LLMStreamChunk,
    LLMToolCall,
    LLMToolCallDelta,
    LLMToolSpec,
    LLMUsage,
)

type ToolNames = dict[str, tuple[str | None, str]]


def qualified_tool_name(name: str, plugin_name: str | None) -> str:
    """Function name sent to OpenAI; plugin and tool joined by `-`."""
    return f"{plugin_name}-{name}" if plugin_name else name


def _encode_result(turn: ToolResultTurn) -> str:
    if turn.error is not None:
        return f"Error: {turn.error}"
    if isinstance(turn.result, str):
        return turn.result
    return msg_encode(turn.result, enc_hook=str).decode("utf-8")


def _content_part(turn: Turn) -> dict[str, Any]:
    match turn:
        case TextTurn(content=content):
            return {"type": "text", "text": content}
        case ImageTurn(data=data, mime_type=mime_type):
            encoded = b64encode(data).decode("ascii")
            return {
                "type": "image_url",
                "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
            }
        case AudioTurn(data=data, mime_type=mime_type):
            return {
                "type": "input_audio",
                "input_audio": {
                    "data": b64encode(data).decode("ascii"),
                    "format": mime_type.rsplit("/", 1)[-1],
                },
            }
        case _:
            raise ValueError(f"Unsupported content part {type(turn).__name__}")


def _usage(usage: Any) -> LLMUsage | None:
    if usage is None:
        return None
    return LLMUsage(
        input_tokens=usage.prompt_tokens or 0,
        output_tokens=usage.completion_tokens or 0,
        total_tokens=usage.total_tokens or 0,
    )


def _meta(payload: Any) -> LLMResponseMeta:
    created = getattr(payload, "created", None)
    return LLMResponseMeta(
        model=getattr(payload, "model", None),
        completion_id=getattr(payload, "id", None),
        system_fingerprint=getattr(payload, "system_fingerprint", None),
        created_at=(
            datetime.fromtimestamp(created, timezone.utc) if created else None
        ),
    )


class OpenAIChatProvider(LLMProviderBase):
    """OpenAI Chat Completions provider."""

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        default_model: str,
        tracer: trace.Tracer | None = None,
    ):
        self._client = client
        self._default_model = default_model
        self._tracer = tracer or trace.get_tracer("iterai.llm.openai")

    @property
    def default_model(self) -> str:
        return self._default_model

    def _format_turn(self, turn: Turn) -> dict[str, Any]:
        match turn:
            case ToolCallTurn(calls=calls, content=content):
                return {
                    "role": "assistant",
                    "content": content or None,
                    "tool_calls": [
                        {
                            "id": call.call_id,
                            "type": "function",
                            "function": {
                                "name": qualified_tool_name(call.name, call.plugin_name),
                                "arguments": msg_encode(call.arguments or {}).decode(
                                    "utf-8"
                                ),
                            },
                        }
                        for call in calls
                    ],
                }
            case ToolResultTurn(call_id=call_id):
                return {
                    "role": "tool",
                    "tool_call_id": call_id,
                    "content": _encode_result(turn),
                }
            case TextTurn(content=content):
                return {"role": turn.role, "content": content}
            case CollectionTurn(items=items):
                return {"role": turn.role, "content": [_content_part(i) for i in items]}
            case _:
                return {"role": turn.role, "content": [_content_part(turn)]}

    def _format_tool(self, tool: LLMToolSpec) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": qualified_tool_name(tool["name"], tool["plugin_name"]),
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }

    def _format_response_format(self, fmt: LLMResponseFormat) -> dict[str, Any]:
        if fmt.type == "json_schema" and is_set(fmt.schema):
            return {
                "type": "json_schema",
                "json_schema": {"name": fmt.name, "schema": fmt.schema},
            }
        if fmt.type == "json_schema":
            return {"type": "json_object"}
        return {"type": fmt.type}

    def _build_kwargs(self, request: LLMRequest) -> tuple[dict[str, Any], ToolNames]:
        """Translate LLMRequest into Chat Completions kwargs."""
        kwargs: dict[str, Any] = {
            "model": request.get("model", self._default_model),
            "messages": [self._format_turn(turn) for turn in request["messages"]],
        }
        for key in ("temperature", "top_p", "max_tokens", "seed"):
            if is_present(value := request.get(key, MISSING)):
                kwargs[key] = value

        tools: Sequence[LLMToolSpec] = request.get("tools", [])
        tool_choice = request.get("tool_choice", MISSING)
        if isinstance(tool_choice, list):
            # only the required tools are offered, and one must be called
            tools = tool_choice
            tool_choice = "required"
        if tools:
            kwargs["tools"] = [self._format_tool(tool) for tool in tools]
            if is_present(tool_choice):
                kwargs["tool_choice"] = tool_choice

        if is_present(response_format := request.get("response_format", MISSING)):
            kwargs["response_format"] = self._format_response_format(response_format)

        names: ToolNames = {
            qualified_tool_name(t["name"], t["plugin_name"]): (t["plugin_name"], t["name"])
            for t in request.get("tools", [])
        }
        return kwargs, names

    def _split_name(self, qualified: str, names: ToolNames) -> tuple[str | None, str]:
        return names.get(qualified, (None, qualified))

    def _to_llm_response(self, completion: Any, names: ToolNames) -> LLMResponse:
        choice = completion.choices[0]
        message = choice.message
        tool_calls: list[LLMToolCall] = []
        for call in message.tool_calls or []:
            plugin_name, name = self._split_name(call.function.name, names)
            arguments, error = decode_arguments(call.function.arguments or "")
            tool_calls.append(
                LLMToolCall(
                    call_id=call.id,
                    name=name,
                    plugin_name=plugin_name,
                    arguments=arguments,
                    parse_error=error,
                )
            )
        return LLMResponse(
            text=message.content or "",
            role=message.role or "assistant",
            tool_calls=tool_calls,
            usage=_usage(completion.usage),
            finish_reason=choice.finish_reason,
            meta=_meta(completion),
        )

    def _map_chunk(self, chunk: Any, names: ToolNames) -> LLMStreamChunk:
        usage = _usage(getattr(chunk, "usage", None))
        if not chunk.choices:
            return LLMStreamChunk(usage=usage, meta=_meta(chunk))

        choice = chunk.choices[0]
        delta = choice.delta
        deltas: list[LLMToolCallDelta] = []
        for call in delta.tool_calls or []:
            plugin_name, name = None, None
            function = call.function
            if function is not None and function.name:
                plugin_name, name = self._split_name(function.name, names)
            deltas.append(
                LLMToolCallDelta(
                    index=call.index,
                    call_id=call.id,
                    name=name,
                    plugin_name=plugin_name,
                    arguments_delta=(function.arguments or "") if function else "",
                )
            )
        return LLMStreamChunk(
            text_delta=delta.content or "",
            role=delta.role,
            tool_call_deltas=deltas,
            usage=usage,
            finish_reason=choice.finish_reason,
            meta=_meta(chunk),
        )

    async def complete(
        self, request: LLMRequest, *, trace_ctx: Context | None = None
    ) -> LLMResponse:
        kwargs, names = self._build_kwargs(request)
        with self._tracer.start_as_current_span(
            "llm.openai.complete",
            kind=SpanKind.CLIENT,
            context=trace_ctx,
            attributes={"llm.model": kwargs["model"]},
        ):
            completion = await self._client.chat.completions.create(**kwargs)
        return self._to_llm_response(completion, names)

    async def stream(
        self, request: LLMRequest, *, trace_ctx: Context | None = None
    ) -> AsyncGenerator[LLMStreamChunk, None]:
        kwargs, names = self._build_kwargs(request)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}
        span = self._tracer.start_span(
            "llm.openai.stream",
            kind=SpanKind.CLIENT,
            context=trace_ctx,
            attributes={"llm.model": kwargs["model"]},
        )
        try:
            stream = await self._client.chat.completions.create(**kwargs)
            async for chunk in stream:
                yield self._map_chunk(chunk, names)
        finally:
            span.end()
