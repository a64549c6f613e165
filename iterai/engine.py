"""Completion iteration engine.

One run drives the model backend in iterations. An iteration is a backend
call (streamed first when enabled, with a single synchronous retry when the
stream came back empty) plus the tool calls it requested. The run goes on
while tools keep being called.
"""

from collections.abc import AsyncIterable
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

from msgspec import DecodeError, ValidationError
from msgspec.json import decode as msg_decode
from msgspec.json import schema as msg_schema
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import SpanKind, set_span_in_context

from iterai.cancellation import CancellationToken
from iterai.errors import (
    BackendError,
    IterAIConfigurationError,
    StructuredDecodeError,
    ToolInvocationError,
)
from iterai.events import (
    CalledTool,
    IterationComplete,
    ResultEvent,
    ResultEventBuilder,
    StructuredResult,
    TextDelta,
    ToolCallFailed,
    ToolCallPartialResult,
    ToolCallResult,
)
from iterai.executor import ToolExecutor
from iterai.helpers.tool_call_buffer import ToolCallBuffer
from iterai.history import (
    CompletionRole,
    Conversation,
    Identity,
    TextTurn,
    ToolCallItem,
    ToolCallTurn,
    ToolResultTurn,
)
from iterai.llm.models import (
    CompletionSettings,
    LLMProviderBase,
    LLMRequest,
    LLMResponseFormat,
    LLMToolCall,
)
from iterai.tools import ToolRegistry
from iterai.tools.registry import ToolKey


class _BackendPass:
    """Outcome of one backend call, consumed by the iteration that made it."""

    __slots__ = ("text", "role", "tool_calls", "error")

    def __init__(self) -> None:
        self.text = ""
        self.role: CompletionRole = "assistant"
        self.tool_calls: list[LLMToolCall] = []
        self.error: BackendError | None = None

    @property
    def needs_fallback(self) -> bool:
        return self.error is None and not self.tool_calls and not self.text.strip()


def _cancelled(token: CancellationToken | None) -> bool:
    return token is not None and token.cancelled


def _author(role: CompletionRole) -> Identity:
    return Identity(name="assistant", role=role)


class CompletionEngine:
    """Runs a conversation against a model backend until it stops calling tools."""

    def __init__(
        self,
        provider: LLMProviderBase,
        executor: ToolExecutor | None = None,
        *,
        max_iterations: int | None = None,
        tracer: trace.Tracer | None = None,
    ):
        if max_iterations is not None and max_iterations < 1:
            raise IterAIConfigurationError("max_iterations must be at least 1")
        self.provider = provider
        self._executor = executor
        self._max_iterations = max_iterations
        self._tracer = tracer or trace.get_tracer("iterai.engine")

    @property
    def max_iterations(self) -> int | None:
        return self._max_iterations

    def _resolve_executor(
        self, tools: ToolRegistry | ToolExecutor | None
    ) -> ToolExecutor | None:
        if tools is None:
            return self._executor
        if isinstance(tools, ToolExecutor):
            return tools
        graph = self._executor.graph if self._executor else None
        return ToolExecutor(tools, graph)

    def _build_request(
        self,
        conversation: Conversation,
        settings: CompletionSettings,
        executor: ToolExecutor | None,
        required: set[ToolKey],
        response_format: LLMResponseFormat | None,
    ) -> LLMRequest:
        request = LLMRequest(
            messages=conversation.turns,
            temperature=settings.temperature,
            top_p=settings.top_p,
            max_tokens=settings.max_tokens,
        )
        if settings.model:
            request["model"] = settings.model
        if settings.seed:
            request["seed"] = conversation.seed()
        if executor is not None and len(executor.registry):
            request["tools"] = executor.registry.specs()
            if required:
                request["tool_choice"] = [
                    tool.tool_spec
                    for tool in executor.registry.required()
                    if tool.key in required
                ]
            else:
                request["tool_choice"] = "auto"
        if response_format is not None:
            request["response_format"] = response_format
        return request

    async def _call_backend(
        self,
        request: LLMRequest,
        *,
        streamed: bool,
        token: CancellationToken | None,
        trace_ctx: Context,
    ) -> AsyncGenerator[ResultEvent | _BackendPass, None]:
        builder = ResultEventBuilder(streamed=streamed)
        outcome = _BackendPass()
        yield builder.call_begin()

        if not streamed:
            try:
                response = await self.provider.complete(request, trace_ctx=trace_ctx)
            except Exception as exc:
                outcome.error = BackendError(str(exc), streamed=False)
                outcome.error.__cause__ = exc
                yield outcome
                return
            if _cancelled(token):
                return
            builder.meta = response.meta
            outcome.role = response.role
            outcome.text = response.text
            outcome.tool_calls = list(response.tool_calls)
            if response.text:
                yield builder.text_delta(response.text)
            if response.usage is not None:
                yield builder.usage(response.usage)
            if response.finish_reason:
                yield builder.finish_reason(response.finish_reason)
            yield outcome
            return

        buffer = ToolCallBuffer()
        text: list[str] = []
        role: CompletionRole | None = None
        try:
            stream = self.provider.stream(request, trace_ctx=trace_ctx)
            try:
                async for chunk in stream:
                    if _cancelled(token):
                        return
                    if chunk.error is not None:
                        raise chunk.error
                    if chunk.meta is not None:
                        builder.meta = chunk.meta
                    if role is None and chunk.role is not None:
                        role = chunk.role
                    for delta in chunk.tool_call_deltas:
                        buffer.push(delta)
                    if chunk.text_delta:
                        text.append(chunk.text_delta)
                        yield builder.text_delta(chunk.text_delta)
                    if chunk.usage is not None:
                        yield builder.usage(chunk.usage)
                    if chunk.finish_reason:
                        yield builder.finish_reason(chunk.finish_reason)
            finally:
                await stream.aclose()
        except Exception as exc:
            outcome.error = BackendError(str(exc), streamed=True)
            outcome.error.__cause__ = exc

        outcome.text = "".join(text)
        outcome.role = role or "assistant"
        if outcome.error is None:
            outcome.tool_calls = buffer.finalize()
        yield outcome

    async def _invoke_tool(
        self,
        conversation: Conversation,
        executor: ToolExecutor | None,
        item: ToolCallItem,
        parse_error: str | None,
        token: CancellationToken | None,
        trace_ctx: Context,
    ) -> AsyncGenerator[ResultEvent, None]:
        tool_ref = dict(id=item.call_id, name=item.name, plugin_name=item.plugin_name)

        def failed(exc: Exception) -> ToolCallFailed:
            if not isinstance(exc, ToolInvocationError):
                wrapped = ToolInvocationError(str(exc), call=item)
                wrapped.__cause__ = exc
                exc = wrapped
            conversation.append(
                ToolResultTurn(
                    call_id=item.call_id,
                    name=item.name,
                    plugin_name=item.plugin_name,
                    error=exc,
                )
            )
            return ToolCallFailed(error=exc, **tool_ref)

        try:
            if parse_error is not None:
                raise ToolInvocationError(parse_error, call=item)
            if executor is None:
                raise ToolInvocationError(
                    f"No tools are configured, cannot call {item.qualified_name!r}",
                    call=item,
                )
            result = await executor.execute(item, token, trace_ctx=trace_ctx)
        except Exception as exc:
            yield failed(exc)
            return

        if isinstance(result, AsyncIterable):
            values: list[Any] = []
            try:
                async for value in result:
                    values.append(value)
                    yield ToolCallPartialResult(value=value, **tool_ref)
                    if _cancelled(token):
                        return
            except Exception as exc:
                yield failed(exc)
                return
            result = values

        conversation.append(
            ToolResultTurn(
                call_id=item.call_id,
                name=item.name,
                plugin_name=item.plugin_name,
                result=result,
            )
        )
        yield ToolCallResult(value=result, **tool_ref)

    async def _invoke_tools(
        self,
        conversation: Conversation,
        outcome: _BackendPass,
        executor: ToolExecutor | None,
        required: set[ToolKey],
        builder: ResultEventBuilder,
        iteration: int,
        token: CancellationToken | None,
        trace_ctx: Context,
    ) -> AsyncGenerator[ResultEvent, None]:
        items = [
            ToolCallItem(
                call_id=call.call_id,
                name=call.name,
                plugin_name=call.plugin_name,
                arguments=call.arguments,
            )
            for call in outcome.tool_calls
        ]
        call_turn = ToolCallTurn(
            identity=_author(outcome.role), calls=list(items), content=outcome.text
        )
        conversation.append(call_turn)
        called_tools = [
            CalledTool(id=item.call_id, name=item.name, plugin_name=item.plugin_name)
            for item in items
        ]

        for item, call in zip(items, outcome.tool_calls):
            if _cancelled(token):
                return
            yield builder.tool_requested(
                call_id=item.call_id,
                name=item.name,
                plugin_name=item.plugin_name,
                arguments=item.arguments,
            )
            if _cancelled(token):
                return
            if executor is not None and (
                tool := executor.registry.get(item.name, item.plugin_name)
            ):
                required.discard(tool.key)

            # the consumer may have edited the conversation while suspended
            if call_turn not in conversation:
                break
            if not any(i is item for i in call_turn.calls):
                continue

            tool_gen = self._invoke_tool(
                conversation, executor, item, call.parse_error, token, trace_ctx
            )
            try:
                async for event in tool_gen:
                    yield event
            finally:
                await tool_gen.aclose()
            if _cancelled(token):
                return

        yield builder.iteration_complete(
            iteration_index=iteration, called_tools=called_tools
        )

    async def _run_iteration(
        self,
        conversation: Conversation,
        settings: CompletionSettings,
        executor: ToolExecutor | None,
        required: set[ToolKey],
        response_format: LLMResponseFormat | None,
        iteration: int,
        token: CancellationToken | None,
        trace_ctx: Context,
    ) -> AsyncGenerator[ResultEvent, None]:
        iteration_span = self._tracer.start_span(
            "completion.iteration",
            kind=SpanKind.INTERNAL,
            context=trace_ctx,
            attributes={
                "completion.iteration": iteration,
                "completion.stream": settings.stream,
            },
        )
        iteration_ctx = set_span_in_context(iteration_span, trace_ctx)

        try:
            streamed = settings.stream
            outcome: _BackendPass | None = None
            for attempt_streamed in ((True, False) if streamed else (False,)):
                streamed = attempt_streamed
                request = self._build_request(
                    conversation, settings, executor, required, response_format
                )
                backend_gen = self._call_backend(
                    request, streamed=streamed, token=token, trace_ctx=iteration_ctx
                )
                outcome = None
                try:
                    async for event in backend_gen:
                        if isinstance(event, _BackendPass):
                            outcome = event
                        else:
                            yield event
                finally:
                    await backend_gen.aclose()
                if outcome is None or _cancelled(token):
                    return
                if not outcome.needs_fallback:
                    break

            assert outcome is not None
            builder = ResultEventBuilder(streamed=streamed)
            iteration_span.set_attribute("completion.streamed", streamed)

            if outcome.error is not None:
                iteration_span.record_exception(outcome.error)
                yield builder.backend_failed(outcome.error)
                yield builder.iteration_complete(
                    iteration_index=iteration, is_error=True
                )
                return

            if outcome.tool_calls:
                tools_gen = self._invoke_tools(
                    conversation,
                    outcome,
                    executor,
                    required,
                    builder,
                    iteration,
                    token,
                    iteration_ctx,
                )
                try:
                    async for event in tools_gen:
                        yield event
                finally:
                    await tools_gen.aclose()
                return

            if outcome.text.strip():
                conversation.append(
                    TextTurn(identity=_author(outcome.role), content=outcome.text)
                )
                yield builder.iteration_complete(iteration_index=iteration)
                return

            yield builder.iteration_complete(
                iteration_index=iteration, is_empty_response=True
            )
        finally:
            if iteration_span.is_recording():
                iteration_span.end()

    async def run(
        self,
        conversation: Conversation,
        settings: CompletionSettings | None = None,
        tools: ToolRegistry | ToolExecutor | None = None,
        token: CancellationToken | None = None,
        *,
        result_type: Any = None,
        trace_ctx: Context | None = None,
    ) -> AsyncGenerator[ResultEvent, None]:
        """Yield result events until the model answers without calling tools.

        The conversation is owned by the run while it is being iterated:
        assistant turns, tool calls and tool results are appended to it.
        When `result_type` is given, the text of the whole run is decoded into
        it and emitted last as a `StructuredResult`.
        """
        settings = settings or CompletionSettings()
        executor = self._resolve_executor(tools)
        required: set[ToolKey] = (
            {tool.key for tool in executor.registry.required()} if executor else set()
        )
        response_format = None
        if result_type is not None:
            response_format = LLMResponseFormat(
                type="json_schema",
                name=getattr(result_type, "__name__", "result"),
                schema=msg_schema(result_type),
            )

        run_span = self._tracer.start_span(
            "completion.run",
            kind=SpanKind.INTERNAL,
            context=trace_ctx,
            attributes={
                "completion.stream": settings.stream,
                "completion.tool_count": len(executor.registry) if executor else 0,
            },
        )
        run_ctx = set_span_in_context(run_span, trace_ctx or Context())

        collected: list[str] = []
        iteration = 0
        try:
            while not _cancelled(token):
                iteration_gen = self._run_iteration(
                    conversation,
                    settings,
                    executor,
                    required,
                    response_format,
                    iteration,
                    token,
                    run_ctx,
                )
                completed: IterationComplete | None = None
                try:
                    async for event in iteration_gen:
                        if isinstance(event, TextDelta):
                            collected.append(event.text)
                        elif isinstance(event, IterationComplete):
                            completed = event
                        yield event
                finally:
                    await iteration_gen.aclose()

                if completed is None:
                    return
                iteration += 1
                if completed.is_error:
                    return
                if not completed.called_tools:
                    break
                if self._max_iterations is not None and iteration >= self._max_iterations:
                    break

            run_span.set_attribute("completion.iterations", iteration)
            if result_type is None or _cancelled(token):
                return
            text = "".join(collected)
            if not text.strip():
                return
            try:
                value = msg_decode(text, type=result_type)
            except (DecodeError, ValidationError) as exc:
                raise StructuredDecodeError(
                    f"Cannot decode completion text as {result_type!r}: {exc}",
                    text=text,
                ) from exc
            yield StructuredResult(
                value=value,
                created_at=datetime.now(timezone.utc),
                streamed=settings.stream,
            )
        finally:
            if run_span.is_recording():
                run_span.end()
