from inspect import iscoroutinefunction, isasyncgenfunction, signature
from typing import Any, Callable, TypedDict, Unpack, overload

from msgspec import Struct, convert
from msgspec.structs import asdict as msg_asdict

from iterai.interface import MISSING, Maybe, Record, is_present
from iterai.llm.models import LLMToolSpec

from .param import ToolSignature


class ToolReturn(Record):
    """Description of what a tool gives back to the model."""

    description: str = ""
    type: str = ""


class IToolMeta(TypedDict, total=False):
    name: str
    """
    Name the model calls the tool by; defaults to the function name.
    """
    plugin_name: str
    """
    Plugin the tool belongs to; tools are addressed by (plugin_name, name).
    """
    description: str
    """
    Human-readable description of the tool; defaults to the docstring.
    """
    returns: ToolReturn
    required: bool
    """
    Whether the model must call this tool before it may answer freely.
    """


class Tool[**P, R]:
    def __init__(
        self,
        name: str,
        signature: ToolSignature,
        func: Callable[P, R],
        *,
        plugin_name: str | None = None,
        description: str = "",
        returns: ToolReturn | None = None,
        required: bool = False,
    ):
        self.name = name
        self.plugin_name = plugin_name
        self.signature = signature
        self.func = func
        self.description = description
        self.returns = returns or ToolReturn()
        self.required = required
        self._params_struct: type[Struct] = signature.build_struct()
        self._is_async = iscoroutinefunction(func) or isasyncgenfunction(func)

    def __repr__(self) -> str:
        return f"Tool(key={self.key!r}, required={self.required})"

    @property
    def key(self) -> tuple[str | None, str]:
        return (self.plugin_name, self.name)

    @property
    def is_async(self) -> bool:
        """Whether the tool function is asynchronous."""
        return self._is_async

    def decode_params(self, arguments: dict[str, Any] | None) -> dict[str, Any]:
        """Validate model supplied arguments and return them keyed by parameter name."""
        payload = convert(arguments or {}, type=self._params_struct, strict=False)
        return msg_asdict(payload)

    def __call__(self, *args: P.args, **kwds: P.kwargs) -> R:
        """Invoke the wrapped tool function directly."""
        return self.func(*args, **kwds)

    @property
    def tool_spec(self) -> LLMToolSpec:
        description = self.description
        if self.returns.description:
            description = f"{description}\nReturns: {self.returns.description}".strip()
        return LLMToolSpec(
            name=self.name,
            plugin_name=self.plugin_name,
            description=description,
            parameters=self.signature.generate_params_schema(),
        )

    @classmethod
    def from_func(
        cls, func: Callable[P, R], meta: Maybe[IToolMeta] = MISSING
    ) -> "Tool[P, R]":
        """Construct a Tool from a callable using its annotated signature."""
        tool_meta: IToolMeta = meta if is_present(meta) else {}
        tool_signature = ToolSignature.from_signature(signature(func))
        returns = tool_meta.get("returns")
        if returns is None and is_present(tool_signature.return_type):
            return_type = tool_signature.return_type
            returns = ToolReturn(type=getattr(return_type, "__name__", str(return_type)))

        return cls(
            name=tool_meta.get("name", func.__name__),
            signature=tool_signature,
            func=func,
            plugin_name=tool_meta.get("plugin_name"),
            description=tool_meta.get("description") or (func.__doc__ or "").strip(),
            returns=returns,
            required=tool_meta.get("required", False),
        )


@overload
def tool[**P, R](func: Callable[P, R]) -> Tool[P, R]: ...


@overload
def tool[**P, R](
    **tool_meta: Unpack[IToolMeta],
) -> Callable[[Callable[P, R]], Tool[P, R]]: ...


def tool[**P, R](
    func: Maybe[Callable[P, R]] = MISSING,
    **tool_meta: Unpack[IToolMeta],
) -> Tool[P, R] | Callable[[Callable[P, R]], Tool[P, R]]:
    if is_present(func):  # without any config
        return Tool[P, R].from_func(func)

    def wrapper(f: Callable[P, R]) -> Tool[P, R]:
        return Tool[P, R].from_func(f, meta=tool_meta)

    return wrapper
