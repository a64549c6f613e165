import inspect
from time import perf_counter
from typing import Any, Callable

from ididi import Graph
from msgspec import ValidationError
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import SpanKind, Tracer

from iterai.cancellation import CancellationToken
from iterai.errors import ToolInvocationError
from iterai.history import ToolCallItem
from iterai.interface import is_present
from iterai.tools import Tool, ToolRegistry


class ToolExecutor:
    """Resolves a requested call against the registry and invokes the tool.

    Model parameters come from the call arguments, runtime parameters from
    fixed values or factories resolved through `graph`, and parameters
    annotated with `CancellationToken` receive the run's token.
    Async iterables returned by a tool are handed back unconsumed.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        graph: Graph | None = None,
        *,
        tracer: Tracer | None = None,
    ):
        self.registry = registry
        self.graph = graph or Graph()
        self._tracer = tracer or trace.get_tracer("iterai.executor")

    def lookup(self, call: ToolCallItem) -> Tool[Any, Any]:
        tool = self.registry.get(call.name, call.plugin_name)
        if tool is None:
            raise ToolInvocationError(
                f"Unknown tool {call.qualified_name!r}", call=call
            )
        return tool

    async def _resolve_runtime(self, tool: Tool[Any, Any]) -> dict[str, Any]:
        resolved: dict[str, Any] = {}
        for name, param in tool.signature.runtime_params.items():
            if is_present(param.value):
                resolved[name] = param.value
            elif is_present(param.factory):
                resolved[name] = await self.graph.aresolve(param.factory)
        return resolved

    async def execute(
        self,
        call: ToolCallItem,
        token: CancellationToken | None = None,
        *,
        trace_ctx: Context | None = None,
    ) -> Any:
        tool = self.lookup(call)
        with self._tracer.start_as_current_span(
            f"tool.{tool.name}",
            context=trace_ctx,
            kind=SpanKind.INTERNAL,
            attributes={
                "tool.name": tool.name,
                "tool.plugin_name": tool.plugin_name or "",
                "tool.call_id": call.call_id or "",
            },
        ):
            try:
                params = tool.decode_params(call.arguments)
            except ValidationError as exc:
                raise ToolInvocationError(
                    f"Invalid arguments for tool {call.qualified_name!r}: {exc}",
                    call=call,
                ) from exc

            injected = await self._resolve_runtime(tool)
            for name in tool.signature.token_params:
                injected[name] = token or CancellationToken()

            result = tool(**params, **injected)
            if inspect.isawaitable(result):
                result = await result
            return result


class ILogger:
    def info(self, msg: str, /, **kwargs: Any) -> None: ...

    def success(self, msg: str, /, **kwargs: Any) -> None: ...

    def exception(self, msg: str, /, **kwargs: Any) -> None: ...


type ITimer = Callable[[], float]


class LoggingToolExecutor(ToolExecutor):
    def __init__(
        self,
        registry: ToolRegistry,
        logger: ILogger,
        timer: ITimer = perf_counter,
        graph: Graph | None = None,
        *,
        tracer: Tracer | None = None,
    ) -> None:
        super().__init__(registry, graph, tracer=tracer)
        self.logger = logger
        self.timer = timer

    async def execute(
        self,
        call: ToolCallItem,
        token: CancellationToken | None = None,
        *,
        trace_ctx: Context | None = None,
    ) -> Any:
        call_id = call.call_id
        name = call.qualified_name
        self.logger.info(
            f"Tool {name} starting (call_id={call_id}) with {call.arguments}"
        )
        start = self.timer()
        try:
            result = await super().execute(call, token, trace_ctx=trace_ctx)
        except Exception:
            duration = self.timer() - start
            self.logger.exception(f"Tool {name} failed after {duration:.2f}s")
            raise
        duration = self.timer() - start
        self.logger.success(
            f"Tool {name} finished in {duration:.2f}s, result: {result}",
        )
        return result
