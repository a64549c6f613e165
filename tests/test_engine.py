from typing import AsyncIterator, Callable

import pytest
from msgspec import Struct

from iterai.cancellation import CancellationToken
from iterai.engine import CompletionEngine
from iterai.errors import (
    BackendError,
    IterAIConfigurationError,
    StructuredDecodeError,
    ToolInvocationError,
)
from iterai.events import (
    BackendCallFailed,
    CallBegin,
    FinishReason,
    IterationComplete,
    ResultEvent,
    StructuredResult,
    TextDelta,
    ToolCallFailed,
    ToolCallPartialResult,
    ToolCallRequested,
    ToolCallResult,
    Usage,
)
from iterai.executor import ToolExecutor
from iterai.history import (
    Conversation,
    SimulatedToolCall,
    TextTurn,
    ToolCallTurn,
    ToolResultTurn,
)
from iterai.llm.models import (
    CompletionSettings,
    LLMProviderBase,
    LLMRequest,
    LLMResponse,
    LLMResponseMeta,
    LLMStreamChunk,
    LLMToolCall,
    LLMToolCallDelta,
    LLMUsage,
)
from iterai.tools import Annotated, ToolRegistry, spec, tool


class FakeProvider(LLMProviderBase):
    """Replays queued responses and records every request."""

    def __init__(
        self,
        *,
        responses: list[LLMResponse | Exception] | None = None,
        streams: list[list[LLMStreamChunk | Exception]] | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.streams = list(streams or [])
        self.requests: list[tuple[str, LLMRequest]] = []

    async def complete(self, request: LLMRequest, *, trace_ctx=None) -> LLMResponse:
        self.requests.append(("complete", request))
        if not self.responses:
            raise AssertionError("FakeProvider has no remaining responses")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def stream(self, request: LLMRequest, *, trace_ctx=None):
        self.requests.append(("stream", request))
        if not self.streams:
            raise AssertionError("FakeProvider has no remaining streams")
        for chunk in self.streams.pop(0):
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.requests]


invoked: list[str] = []


@tool(plugin_name="weather")
def forecast(city: Annotated[str, spec(description="City name")]) -> str:
    invoked.append(city)
    return f"sunny in {city}"


@tool(plugin_name="weather")
async def hourly(city: Annotated[str, spec(description="City name")]) -> AsyncIterator[str]:
    yield f"{city} 09:00"
    yield f"{city} 10:00"


@tool(plugin_name="weather")
def broken(city: Annotated[str, spec(description="City name")]) -> str:
    raise RuntimeError("station offline")


@tool(plugin_name="weather", required=True)
def alerts(city: Annotated[str, spec(description="City name")]) -> list[str]:
    return []


@pytest.fixture(autouse=True)
def reset_invoked():
    invoked.clear()
    yield
    invoked.clear()


def weather_tools() -> ToolRegistry:
    return ToolRegistry(forecast, hourly, broken)


def tool_call(call_id: str, name: str = "forecast", city: str = "Oslo") -> LLMToolCall:
    return LLMToolCall(
        call_id=call_id, name=name, plugin_name="weather", arguments={"city": city}
    )


def asking() -> Conversation:
    conversation = Conversation.with_system("You are a weather assistant.")
    conversation.user("How is the weather?")
    return conversation


async def drain(
    stream: AsyncIterator[ResultEvent],
    on_event: Callable[[ResultEvent], None] | None = None,
) -> list[ResultEvent]:
    events: list[ResultEvent] = []
    async for event in stream:
        events.append(event)
        if on_event is not None:
            on_event(event)
    return events


def kinds(events: list[ResultEvent]) -> list[type]:
    return [type(event) for event in events]


@pytest.mark.anyio
async def test_text_answer_ends_after_one_iteration() -> None:
    meta = LLMResponseMeta(model="gpt-test", completion_id="cmpl-1")
    provider = FakeProvider(
        responses=[
            LLMResponse(
                text="It is sunny.",
                usage=LLMUsage(input_tokens=5, output_tokens=3, total_tokens=8),
                finish_reason="stop",
                meta=meta,
            )
        ]
    )
    conversation = asking()

    events = await drain(CompletionEngine(provider).run(conversation))

    assert kinds(events) == [CallBegin, TextDelta, Usage, FinishReason, IterationComplete]
    text, usage = events[1], events[2]
    assert isinstance(text, TextDelta)
    assert text.text == "It is sunny."
    assert text.model == "gpt-test"
    assert text.completion_id == "cmpl-1"
    assert not text.streamed
    assert isinstance(usage, Usage)
    assert usage.total_tokens == 8
    completed = events[-1]
    assert isinstance(completed, IterationComplete)
    assert completed.iteration_index == 0
    assert completed.called_tools == []
    assert not completed.is_error
    last = conversation[-1]
    assert isinstance(last, TextTurn)
    assert last.role == "assistant"
    assert last.content == "It is sunny."


@pytest.mark.anyio
async def test_streamed_text_is_forwarded_chunk_by_chunk() -> None:
    provider = FakeProvider(
        streams=[
            [
                LLMStreamChunk(role="assistant", text_delta="It is "),
                LLMStreamChunk(text_delta="sunny."),
                LLMStreamChunk(finish_reason="stop"),
            ]
        ]
    )
    conversation = asking()

    events = await drain(
        CompletionEngine(provider).run(conversation, CompletionSettings(stream=True))
    )

    assert kinds(events) == [CallBegin, TextDelta, TextDelta, FinishReason, IterationComplete]
    assert all(event.streamed for event in events if hasattr(event, "streamed"))
    assert provider.kinds == ["stream"]
    last = conversation[-1]
    assert isinstance(last, TextTurn)
    assert last.content == "It is sunny."


@pytest.mark.anyio
async def test_empty_stream_falls_back_to_one_sync_call() -> None:
    provider = FakeProvider(
        streams=[[LLMStreamChunk(text_delta="  "), LLMStreamChunk(finish_reason="stop")]],
        responses=[LLMResponse(text="Sync answer")],
    )

    events = await drain(
        CompletionEngine(provider).run(asking(), CompletionSettings(stream=True))
    )

    assert provider.kinds == ["stream", "complete"]
    begins = [event for event in events if isinstance(event, CallBegin)]
    assert [begin.streamed for begin in begins] == [True, False]
    completes = [event for event in events if isinstance(event, IterationComplete)]
    assert len(completes) == 1
    assert completes[0].iteration_index == 0
    assert not completes[0].streamed
    assert not completes[0].is_empty_response


@pytest.mark.anyio
async def test_empty_sync_fallback_is_not_retried() -> None:
    provider = FakeProvider(streams=[[]], responses=[LLMResponse()])
    conversation = asking()

    events = await drain(
        CompletionEngine(provider).run(conversation, CompletionSettings(stream=True))
    )

    assert provider.kinds == ["stream", "complete"]
    completed = events[-1]
    assert isinstance(completed, IterationComplete)
    assert completed.is_empty_response
    assert len(conversation) == 2


@pytest.mark.anyio
async def test_stream_failure_is_reported_without_fallback() -> None:
    provider = FakeProvider(
        streams=[[LLMStreamChunk(text_delta="It is"), RuntimeError("connection reset")]],
        responses=[LLMResponse(text="never used")],
    )
    conversation = asking()

    events = await drain(
        CompletionEngine(provider).run(conversation, CompletionSettings(stream=True))
    )

    assert kinds(events) == [CallBegin, TextDelta, BackendCallFailed, IterationComplete]
    failed = events[2]
    assert isinstance(failed, BackendCallFailed)
    assert failed.streamed
    assert isinstance(failed.error, BackendError)
    assert isinstance(failed.error.__cause__, RuntimeError)
    completed = events[3]
    assert isinstance(completed, IterationComplete)
    assert completed.is_error
    assert provider.kinds == ["stream"]
    assert len(conversation) == 2


@pytest.mark.anyio
async def test_error_chunk_fails_the_stream() -> None:
    provider = FakeProvider(
        streams=[[LLMStreamChunk(error=ConnectionError("rate limited"))]]
    )

    events = await drain(
        CompletionEngine(provider).run(asking(), CompletionSettings(stream=True))
    )

    assert kinds(events) == [CallBegin, BackendCallFailed, IterationComplete]


@pytest.mark.anyio
async def test_sync_failure_is_reported_as_event() -> None:
    provider = FakeProvider(responses=[TimeoutError("too slow")])

    events = await drain(CompletionEngine(provider).run(asking()))

    assert kinds(events) == [CallBegin, BackendCallFailed, IterationComplete]
    failed = events[1]
    assert isinstance(failed, BackendCallFailed)
    assert not failed.streamed


@pytest.mark.anyio
async def test_tool_batch_runs_in_order_then_continues() -> None:
    provider = FakeProvider(
        responses=[
            LLMResponse(
                text="Let me check.",
                tool_calls=[tool_call("c1", city="Oslo"), tool_call("c2", city="Bergen")],
            ),
            LLMResponse(text="Sunny in both."),
        ]
    )
    conversation = asking()

    events = await drain(CompletionEngine(provider).run(conversation, tools=weather_tools()))

    assert kinds(events) == [
        CallBegin,
        TextDelta,
        ToolCallRequested,
        ToolCallResult,
        ToolCallRequested,
        ToolCallResult,
        IterationComplete,
        CallBegin,
        TextDelta,
        IterationComplete,
    ]
    first_complete = events[6]
    assert isinstance(first_complete, IterationComplete)
    assert [t.id for t in first_complete.called_tools] == ["c1", "c2"]
    last_complete = events[-1]
    assert isinstance(last_complete, IterationComplete)
    assert last_complete.iteration_index == 1
    assert invoked == ["Oslo", "Bergen"]

    call_turn = conversation[2]
    assert isinstance(call_turn, ToolCallTurn)
    assert call_turn.content == "Let me check."
    assert [c.call_id for c in call_turn.calls] == ["c1", "c2"]
    results = conversation[3:5]
    assert [(r.call_id, r.result) for r in results if isinstance(r, ToolResultTurn)] == [
        ("c1", "sunny in Oslo"),
        ("c2", "sunny in Bergen"),
    ]
    # the second request sees the tool traffic
    _, second_request = provider.requests[1]
    assert len(second_request["messages"]) == 5


@pytest.mark.anyio
async def test_streamed_tool_call_fragments_are_joined() -> None:
    provider = FakeProvider(
        streams=[
            [
                LLMStreamChunk(
                    role="assistant",
                    tool_call_deltas=[
                        LLMToolCallDelta(
                            index=0,
                            call_id="c1",
                            name="forecast",
                            plugin_name="weather",
                            arguments_delta='{"city":',
                        )
                    ],
                ),
                LLMStreamChunk(
                    tool_call_deltas=[LLMToolCallDelta(index=0, arguments_delta=' "Oslo"}')]
                ),
            ],
            [LLMStreamChunk(text_delta="Done.")],
        ]
    )

    events = await drain(
        CompletionEngine(provider).run(
            asking(), CompletionSettings(stream=True), weather_tools()
        )
    )

    requested = next(e for e in events if isinstance(e, ToolCallRequested))
    assert requested.arguments == {"city": "Oslo"}
    assert requested.streamed
    result = next(e for e in events if isinstance(e, ToolCallResult))
    assert result.value == "sunny in Oslo"
    assert provider.kinds == ["stream", "stream"]


@pytest.mark.anyio
async def test_failed_tool_does_not_abort_the_batch() -> None:
    provider = FakeProvider(
        responses=[
            LLMResponse(tool_calls=[tool_call("c1", name="broken"), tool_call("c2")]),
            LLMResponse(text="Partial data."),
        ]
    )
    conversation = asking()

    events = await drain(CompletionEngine(provider).run(conversation, tools=weather_tools()))

    tool_events = [
        e
        for e in events
        if isinstance(e, (ToolCallRequested, ToolCallResult, ToolCallFailed))
    ]
    assert kinds(tool_events) == [
        ToolCallRequested,
        ToolCallFailed,
        ToolCallRequested,
        ToolCallResult,
    ]
    failed = tool_events[1]
    assert isinstance(failed, ToolCallFailed)
    assert isinstance(failed.error, ToolInvocationError)
    assert isinstance(failed.error.__cause__, RuntimeError)
    error_turn = conversation.result_for("c1")
    assert error_turn is not None
    assert error_turn.error is failed.error


@pytest.mark.anyio
async def test_undecodable_arguments_fail_the_call() -> None:
    provider = FakeProvider(
        responses=[
            LLMResponse(
                tool_calls=[
                    LLMToolCall(
                        call_id="c1",
                        name="forecast",
                        plugin_name="weather",
                        parse_error="invalid JSON",
                    )
                ]
            ),
            LLMResponse(text="Sorry."),
        ]
    )

    events = await drain(CompletionEngine(provider).run(asking(), tools=weather_tools()))

    assert any(isinstance(e, ToolCallFailed) for e in events)
    assert invoked == []


@pytest.mark.anyio
async def test_tool_call_without_tools_fails() -> None:
    provider = FakeProvider(
        responses=[
            LLMResponse(tool_calls=[tool_call("c1")]),
            LLMResponse(text="No tools, then."),
        ]
    )

    events = await drain(CompletionEngine(provider).run(asking()))

    failed = next(e for e in events if isinstance(e, ToolCallFailed))
    assert isinstance(failed.error, ToolInvocationError)


@pytest.mark.anyio
async def test_streaming_tool_emits_partials_and_aggregated_list() -> None:
    provider = FakeProvider(
        responses=[
            LLMResponse(tool_calls=[tool_call("c1", name="hourly")]),
            LLMResponse(text="Two readings."),
        ]
    )
    conversation = asking()

    events = await drain(CompletionEngine(provider).run(conversation, tools=weather_tools()))

    partials = [e.value for e in events if isinstance(e, ToolCallPartialResult)]
    assert partials == ["Oslo 09:00", "Oslo 10:00"]
    result = next(e for e in events if isinstance(e, ToolCallResult))
    assert result.value == ["Oslo 09:00", "Oslo 10:00"]
    stored = conversation.result_for("c1")
    assert stored is not None
    assert stored.result == ["Oslo 09:00", "Oslo 10:00"]


@pytest.mark.anyio
async def test_removing_the_call_turn_abandons_the_batch() -> None:
    provider = FakeProvider(
        responses=[
            LLMResponse(tool_calls=[tool_call("c1"), tool_call("c2", city="Bergen")]),
            LLMResponse(text="Never mind."),
        ]
    )
    conversation = asking()

    def veto(event: ResultEvent) -> None:
        if isinstance(event, ToolCallRequested) and event.id == "c1":
            conversation.remove(conversation.tool_call_turns()[-1])

    events = await drain(
        CompletionEngine(provider).run(conversation, tools=weather_tools()), veto
    )

    assert invoked == []
    assert len([e for e in events if isinstance(e, ToolCallRequested)]) == 1
    assert conversation.tool_call_turns() == []
    assert sum(isinstance(e, IterationComplete) for e in events) == 2


@pytest.mark.anyio
async def test_removing_one_call_skips_only_that_call() -> None:
    provider = FakeProvider(
        responses=[
            LLMResponse(tool_calls=[tool_call("c1"), tool_call("c2", city="Bergen")]),
            LLMResponse(text="Bergen only."),
        ]
    )
    conversation = asking()

    def veto(event: ResultEvent) -> None:
        if isinstance(event, ToolCallRequested) and event.id == "c1":
            conversation.remove_tool_call("c1")

    await drain(CompletionEngine(provider).run(conversation, tools=weather_tools()), veto)

    assert invoked == ["Bergen"]
    assert conversation.result_for("c1") is None
    assert conversation.result_for("c2") is not None


@pytest.mark.anyio
async def test_required_tool_constrains_choice_until_called() -> None:
    provider = FakeProvider(
        responses=[
            LLMResponse(tool_calls=[tool_call("c1", name="alerts")]),
            LLMResponse(text="No alerts."),
        ]
    )

    await drain(
        CompletionEngine(provider).run(asking(), tools=ToolRegistry(forecast, alerts))
    )

    (_, first), (_, second) = provider.requests
    assert first["tool_choice"] == [alerts.tool_spec]
    assert [t["name"] for t in first["tools"]] == ["forecast", "alerts"]
    assert second["tool_choice"] == "auto"


@pytest.mark.anyio
async def test_request_carries_settings() -> None:
    provider = FakeProvider(responses=[LLMResponse(text="ok")])
    settings = CompletionSettings(temperature=0.2, max_tokens=64, model="gpt-test")

    await drain(CompletionEngine(provider).run(asking(), settings))

    (_, request), = provider.requests
    assert request["temperature"] == 0.2
    assert request["max_tokens"] == 64
    assert request["model"] == "gpt-test"
    assert "seed" not in request
    assert "tools" not in request


@pytest.mark.anyio
async def test_seed_is_derived_from_the_conversation() -> None:
    provider = FakeProvider(responses=[LLMResponse(text="ok"), LLMResponse(text="ok")])
    conversation = asking()
    expected = conversation.seed()

    await drain(CompletionEngine(provider).run(conversation, CompletionSettings(seed=True)))
    await drain(CompletionEngine(provider).run(asking(), CompletionSettings(seed=True)))

    (_, first), (_, second) = provider.requests
    assert first["seed"] == expected
    assert second["seed"] == expected


class Station:
    def __str__(self) -> str:
        return "OSL"


@pytest.mark.anyio
async def test_seed_tolerates_arguments_json_cannot_encode() -> None:
    provider = FakeProvider(responses=[LLMResponse(text="ok")])
    conversation = asking()
    conversation.simulate_tool_calls(
        [SimulatedToolCall(name="forecast", arguments={"station": Station()}, result="rain")]
    )
    expected = conversation.seed()

    events = await drain(
        CompletionEngine(provider).run(conversation, CompletionSettings(seed=True))
    )

    (_, request), = provider.requests
    assert request["seed"] == expected
    assert isinstance(events[-1], IterationComplete)


class Reading(Struct):
    city: str
    celsius: int


@pytest.mark.anyio
async def test_structured_result_is_emitted_last() -> None:
    provider = FakeProvider(responses=[LLMResponse(text='{"city": "Oslo", "celsius": 12}')])

    events = await drain(CompletionEngine(provider).run(asking(), result_type=Reading))

    (_, request), = provider.requests
    assert request["response_format"].type == "json_schema"
    last = events[-1]
    assert isinstance(last, StructuredResult)
    assert last.value == Reading(city="Oslo", celsius=12)


@pytest.mark.anyio
async def test_undecodable_structured_text_raises() -> None:
    provider = FakeProvider(responses=[LLMResponse(text="twelve degrees")])

    with pytest.raises(StructuredDecodeError) as exc_info:
        await drain(CompletionEngine(provider).run(asking(), result_type=Reading))

    assert exc_info.value.text == "twelve degrees"


@pytest.mark.anyio
async def test_failed_run_has_no_structured_result() -> None:
    provider = FakeProvider(responses=[RuntimeError("down")])

    events = await drain(CompletionEngine(provider).run(asking(), result_type=Reading))

    assert not any(isinstance(e, StructuredResult) for e in events)


@pytest.mark.anyio
async def test_cancellation_truncates_the_run() -> None:
    provider = FakeProvider(
        responses=[
            LLMResponse(tool_calls=[tool_call("c1"), tool_call("c2", city="Bergen")]),
            LLMResponse(text="unused"),
        ]
    )
    token = CancellationToken()

    def cancel(event: ResultEvent) -> None:
        if isinstance(event, ToolCallRequested):
            token.cancel()

    events = await drain(
        CompletionEngine(provider).run(asking(), tools=weather_tools(), token=token),
        cancel,
    )

    assert kinds(events)[-1] is ToolCallRequested
    assert invoked == []
    assert provider.kinds == ["complete"]


@pytest.mark.anyio
async def test_cancelled_token_makes_no_backend_call() -> None:
    provider = FakeProvider()
    token = CancellationToken()
    token.cancel()

    assert await drain(CompletionEngine(provider).run(asking(), token=token)) == []
    assert provider.requests == []


@pytest.mark.anyio
async def test_max_iterations_caps_the_loop() -> None:
    provider = FakeProvider(responses=[LLMResponse(tool_calls=[tool_call("c1")])])

    events = await drain(
        CompletionEngine(provider, max_iterations=1).run(asking(), tools=weather_tools())
    )

    assert isinstance(events[-1], IterationComplete)
    assert provider.kinds == ["complete"]


@pytest.mark.anyio
async def test_engine_executor_is_used_by_default() -> None:
    provider = FakeProvider(
        responses=[LLMResponse(tool_calls=[tool_call("c1")]), LLMResponse(text="ok")]
    )
    engine = CompletionEngine(provider, ToolExecutor(weather_tools()))

    await drain(engine.run(asking()))

    assert invoked == ["Oslo"]


def test_max_iterations_must_be_positive() -> None:
    with pytest.raises(IterAIConfigurationError):
        CompletionEngine(FakeProvider(), max_iterations=0)
