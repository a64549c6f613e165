from typing import Any

from msgspec import DecodeError, ValidationError
from msgspec.json import decode as msg_decode

from iterai.llm.models import LLMToolCall, LLMToolCallDelta


def decode_arguments(raw: str) -> tuple[dict[str, Any] | None, str | None]:
    """Decode a raw JSON arguments payload into `(arguments, error)`.

    Blank payloads mean "no arguments".
    """
    if not raw.strip():
        return None, None
    try:
        return msg_decode(raw, type=dict[str, Any]), None
    except (DecodeError, ValidationError) as exc:
        return None, f"invalid tool arguments {raw!r}: {exc}"


class _PendingCall:
    __slots__ = ("call_id", "name", "plugin_name", "arguments")

    def __init__(self) -> None:
        self.call_id: str | None = None
        self.name = ""
        self.plugin_name: str | None = None
        self.arguments: list[str] = []


class ToolCallBuffer:
    """Reassembles streamed tool calls whose fragments are keyed by index."""

    __slots__ = ("_pending",)

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def push(self, delta: LLMToolCallDelta) -> None:
        pending = self._pending.setdefault(delta.index, _PendingCall())
        if delta.call_id:
            pending.call_id = delta.call_id
        if delta.name:
            pending.name = delta.name
        if delta.plugin_name:
            pending.plugin_name = delta.plugin_name
        if delta.arguments_delta:
            pending.arguments.append(delta.arguments_delta)

    def finalize(self) -> list[LLMToolCall]:
        """Return completed tool calls in index order and reset the buffer."""
        calls: list[LLMToolCall] = []
        for index in sorted(self._pending):
            pending = self._pending[index]
            arguments, error = decode_arguments("".join(pending.arguments))
            calls.append(
                LLMToolCall(
                    call_id=pending.call_id,
                    name=pending.name,
                    plugin_name=pending.plugin_name,
                    arguments=arguments,
                    parse_error=error,
                )
            )
        self._pending.clear()
        return calls
