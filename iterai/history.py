"""Conversation turns and the mutable history the engine appends to."""

from copy import deepcopy
from hashlib import sha256
from typing import Any, Iterable, Iterator, Literal, Sequence, overload
from uuid import uuid4

from msgspec import Struct, field
from msgspec.json import encode as msg_encode
from msgspec.structs import replace

from iterai.errors import IterAIValidationError
from iterai.interface import Record

type CompletionRole = Literal["system", "user", "assistant", "tool"]


class Identity(Record):
    """Author of a turn."""

    name: str
    """Participant name; turns sharing a name belong to the same participant."""

    role: CompletionRole
    """Role the backend sees for turns authored by this participant."""

    @classmethod
    def system(cls) -> "Identity":
        return cls(name="system", role="system")

    @classmethod
    def user(cls) -> "Identity":
        return cls(name="user", role="user")

    @classmethod
    def assistant(cls) -> "Identity":
        return cls(name="assistant", role="assistant")

    @classmethod
    def tool(cls) -> "Identity":
        return cls(name="tool", role="tool")


class Turn(Struct, eq=False, kw_only=True):
    """Base class of every conversation entry; compared by identity."""

    identity: Identity

    @property
    def role(self) -> CompletionRole:
        return self.identity.role


class TextTurn(Turn, kw_only=True):
    content: str


class ImageTurn(Turn, kw_only=True):
    data: bytes
    mime_type: str = "image/png"


class AudioTurn(Turn, kw_only=True):
    data: bytes
    mime_type: str = "audio/wav"


class CollectionTurn(Turn, kw_only=True):
    """Single message made of several content parts."""

    items: list[Turn] = field(default_factory=list)


class ToolCallItem(Struct, eq=False, kw_only=True):
    """One tool invocation requested by the model."""

    call_id: str | None
    """Backend-assigned id; results reference it."""

    name: str

    plugin_name: str | None = None

    arguments: dict[str, Any] | None = None
    """Decoded arguments, or None when the model sent none."""

    @property
    def qualified_name(self) -> str:
        if self.plugin_name:
            return f"{self.plugin_name}-{self.name}"
        return self.name


class ToolCallTurn(Turn, kw_only=True):
    """Assistant turn that requests one or more (parallel) tool calls."""

    identity: Identity = field(default_factory=Identity.assistant)
    calls: list[ToolCallItem] = field(default_factory=list)
    content: str = ""
    """Text the model produced alongside the calls."""


class ToolResultTurn(Turn, kw_only=True):
    """Outcome of a single tool call, answering the call with the same id."""

    identity: Identity = field(default_factory=Identity.tool)
    call_id: str | None
    name: str
    plugin_name: str | None = None
    result: Any = None
    error: BaseException | None = None


class SimulatedToolCall(Record):
    """A pre-recorded call and its result, used to seed a conversation."""

    name: str
    plugin_name: str | None = None
    arguments: dict[str, Any] | None = None
    result: Any = None


class Conversation:
    """Ordered, mutable list of turns.

    Membership tests, `index` and `remove` compare turns by identity, so a
    caller holding a turn can tell whether it is still part of the history.
    """

    def __init__(self, turns: Iterable[Turn] = ()) -> None:
        self._turns: list[Turn] = list(turns)

    @classmethod
    def with_system(cls, prompt: str, *turns: Turn) -> "Conversation":
        return cls([TextTurn(identity=Identity.system(), content=prompt), *turns])

    def __repr__(self) -> str:
        return f"Conversation({self._turns!r})"

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self._turns)

    @overload
    def __getitem__(self, index: int) -> Turn: ...

    @overload
    def __getitem__(self, index: slice) -> list[Turn]: ...

    def __getitem__(self, index: int | slice) -> Turn | list[Turn]:
        return self._turns[index]

    def __contains__(self, turn: object) -> bool:
        return any(t is turn for t in self._turns)

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)

    def extend(self, turns: Iterable[Turn]) -> None:
        self._turns.extend(turns)

    def insert(self, index: int, turn: Turn) -> None:
        self._turns.insert(index, turn)

    def index(self, turn: Turn) -> int:
        for i, t in enumerate(self._turns):
            if t is turn:
                return i
        raise ValueError(f"{turn!r} is not in conversation")

    def remove(self, turn: Turn) -> None:
        del self._turns[self.index(turn)]

    def pop(self, index: int = -1) -> Turn:
        return self._turns.pop(index)

    def user(self, content: str) -> TextTurn:
        turn = TextTurn(identity=Identity.user(), content=content)
        self._turns.append(turn)
        return turn

    def copy(self) -> "Conversation":
        return Conversation(deepcopy(self._turns))

    def add_messages(self, turns: Iterable[Turn]) -> "Conversation":
        """Return a copy of this conversation with `turns` appended."""
        new = self.copy()
        new.extend(turns)
        return new

    def for_identity(self, identity: Identity) -> "Conversation":
        """Re-cast the history from the point of view of `identity`.

        Text-like turns authored by `identity.name` take `identity.role`, the
        other user/assistant turns take the opposite role. System and tool
        traffic is left untouched.
        """
        if identity.role == "user":
            other: CompletionRole = "assistant"
        elif identity.role == "assistant":
            other = "user"
        else:
            raise IterAIValidationError(
                f"Cannot view a conversation as role {identity.role!r}"
            )

        turns: list[Turn] = []
        for turn in deepcopy(self._turns):
            if isinstance(turn, (ToolCallTurn, ToolResultTurn)) or turn.role not in (
                "user",
                "assistant",
            ):
                turns.append(turn)
                continue
            role = identity.role if turn.identity.name == identity.name else other
            turns.append(replace(turn, identity=replace(turn.identity, role=role)))
        return Conversation(turns)

    # ---- tool call helpers ----

    def tool_call_turns(self) -> list[ToolCallTurn]:
        return [t for t in self._turns if isinstance(t, ToolCallTurn)]

    def tool_result_turns(self) -> list[ToolResultTurn]:
        return [t for t in self._turns if isinstance(t, ToolResultTurn)]

    def find_call(self, call_id: str) -> tuple[ToolCallTurn, ToolCallItem] | None:
        for turn in self.tool_call_turns():
            for item in turn.calls:
                if item.call_id == call_id:
                    return turn, item
        return None

    def result_for(self, call_id: str) -> ToolResultTurn | None:
        for turn in self.tool_result_turns():
            if turn.call_id == call_id:
                return turn
        return None

    def remove_tool_call(self, call_id: str) -> bool:
        """Drop a call item and its result.

        An assistant turn left without calls is dropped as a whole.
        Returns False when no call with `call_id` exists.
        """
        found = self.find_call(call_id)
        if found is None:
            return False
        turn, item = found
        if len(turn.calls) == 1:
            self.remove(turn)
        else:
            turn.calls.remove(item)
        if (result := self.result_for(call_id)) is not None:
            self.remove(result)
        return True

    def replace_tool_result(self, call_id: str, result: Any) -> bool:
        if (turn := self.result_for(call_id)) is None:
            return False
        turn.result = result
        turn.error = None
        return True

    def simulate_tool_calls(
        self, calls: Sequence[SimulatedToolCall]
    ) -> ToolCallTurn | None:
        """Append pre-recorded calls as one assistant turn plus their results."""
        if not calls:
            return None
        items = [
            ToolCallItem(
                call_id=str(uuid4()),
                name=call.name,
                plugin_name=call.plugin_name,
                arguments=dict(call.arguments) if call.arguments is not None else None,
            )
            for call in calls
        ]
        call_turn = ToolCallTurn(calls=items)
        self._turns.append(call_turn)
        for item, call in zip(items, calls):
            self._turns.append(
                ToolResultTurn(
                    call_id=item.call_id,
                    name=item.name,
                    plugin_name=item.plugin_name,
                    result=call.result,
                )
            )
        return call_turn

    def seed(self) -> int:
        return conversation_seed(self._turns)


_SEP = b"\x1f"


def _feed_turn(digest: Any, turn: Turn) -> None:
    digest.update(turn.role.encode())
    digest.update(_SEP)
    match turn:
        case TextTurn(content=content):
            digest.update(content.encode())
        case ImageTurn(data=data, mime_type=mime) | AudioTurn(data=data, mime_type=mime):
            digest.update(data)
            digest.update(_SEP)
            digest.update(mime.encode())
        case CollectionTurn(items=items):
            for item in items:
                _feed_turn(digest, item)
        case ToolCallTurn(calls=calls, content=content):
            digest.update(content.encode())
            for call in calls:
                digest.update(_SEP)
                digest.update(call.qualified_name.encode())
                digest.update(msg_encode(call.arguments, enc_hook=str, order="sorted"))
        case ToolResultTurn(name=name, result=result, error=error):
            digest.update(name.encode())
            digest.update(_SEP)
            digest.update(msg_encode(result, enc_hook=str, order="sorted"))
            if error is not None:
                digest.update(str(error).encode())
        case _:
            digest.update(repr(turn).encode())
    digest.update(b"\x1e")


def conversation_seed(turns: Iterable[Turn]) -> int:
    """Deterministic, order-sensitive seed derived from role and content.

    Stable across processes; always a non-negative 63-bit integer.
    """
    digest = sha256()
    for turn in turns:
        _feed_turn(digest, turn)
    return int.from_bytes(digest.digest()[:8], "big") & ((1 << 63) - 1)
