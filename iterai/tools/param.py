"""Tool parameter declarations.

Every tool parameter is one of three kinds:

- model parameters, `Annotated[T, spec(...)]`, decoded from call arguments
  and described to the model in the tool schema;
- runtime parameters, `Annotated[T, runtime(...)]`, injected by the executor
  and hidden from the model;
- a `CancellationToken` parameter, which receives the token of the run.
"""

from dataclasses import dataclass, field
from inspect import Parameter, Signature
from typing import Annotated as Annotated
from typing import Any, Callable, TypedDict, Unpack, get_args, get_origin

from msgspec import Meta, Struct, defstruct

from iterai.cancellation import CancellationToken
from iterai.errors import IterAIConfigurationError, UnannotatedToolParamError
from iterai.interface import MISSING, Maybe, is_present
from iterai.tools.schema import inline_schema


class ParamConstraint(TypedDict, total=False):
    """Value constraints, checked with `msgspec.Meta` when decoding."""

    gt: int | float
    ge: int | float
    lt: int | float
    le: int | float
    multiple_of: int | float
    pattern: str
    min_length: int
    max_length: int


@dataclass(frozen=True, kw_only=True)
class ParamSpec:
    description: str = ""
    alias: Maybe[str] = MISSING
    required: Maybe[bool] = MISSING
    examples: list[Any] = field(default_factory=list)
    extra_json_schema: dict[str, Any] = field(default_factory=dict)
    constraint: ParamConstraint = field(default_factory=ParamConstraint)


def spec(
    description: str = "",
    alias: Maybe[str] = MISSING,
    required: Maybe[bool] = MISSING,
    examples: Maybe[list[Any]] = MISSING,
    extra_json_schema: Maybe[dict[str, Any]] = MISSING,
    **constraint: Unpack[ParamConstraint],
) -> ParamSpec:
    """
    Declare a parameter the model fills in.

    Args:
        description: shown to the model next to the parameter.
        alias: name of the parameter in the tool schema and in call arguments.
        required: defaults to whether the parameter has no default value.
        examples: sample values added to the schema.
        extra_json_schema: merged into the generated property schema.
        constraint: bounds and patterns, see `ParamConstraint`.
    """
    return ParamSpec(
        description=description,
        alias=alias,
        required=required,
        examples=list(examples) if is_present(examples) else [],
        extra_json_schema=dict(extra_json_schema) if is_present(extra_json_schema) else {},
        constraint=constraint,
    )


@dataclass(frozen=True, kw_only=True)
class RuntimeSpec:
    """A parameter injected at invocation time and hidden from the model."""

    value: Maybe[Any] = MISSING
    factory: Maybe[Callable[..., Any]] = MISSING


def runtime(
    factory: Maybe[Callable[..., Any]] = MISSING, *, value: Maybe[Any] = MISSING
) -> RuntimeSpec:
    """Declare a runtime parameter, either a fixed `value` or a `factory`.

    Factories are resolved through the executor's dependency graph.
    """
    if is_present(factory) == is_present(value):
        raise IterAIConfigurationError(
            "runtime() takes exactly one of `factory` or `value`"
        )
    return RuntimeSpec(value=value, factory=factory)


@dataclass(frozen=True, kw_only=True)
class ToolParam:
    """A model parameter with its decoding annotation and property schema."""

    name: str
    alias: str
    required: bool
    annotation: Any
    schema: dict[str, Any]
    default: Maybe[Any] = MISSING


def _model_param(param: Parameter, value_type: Any, declared: ParamSpec) -> ToolParam:
    default = MISSING if param.default is Parameter.empty else param.default

    schema = inline_schema(value_type, default)
    if declared.description:
        schema["description"] = declared.description
    if declared.examples:
        schema["examples"] = declared.examples
    schema.update(declared.extra_json_schema)

    annotation = value_type
    if declared.constraint:
        annotation = Annotated[value_type, Meta(**declared.constraint)]

    return ToolParam(
        name=param.name,
        alias=declared.alias if is_present(declared.alias) else param.name,
        required=(
            declared.required if is_present(declared.required) else default is MISSING
        ),
        annotation=annotation,
        schema=schema,
        default=default,
    )


@dataclass(kw_only=True)
class ToolSignature:
    params: dict[str, ToolParam]
    runtime_params: dict[str, RuntimeSpec]
    token_params: list[str]
    return_type: Maybe[Any]

    def generate_params_schema(self) -> dict[str, Any]:
        """Object schema of the model parameters, keyed by alias."""
        schema: dict[str, Any] = {
            "type": "object",
            "properties": {p.alias: p.schema for p in self.params.values()},
            "additionalProperties": False,
        }
        if required := [p.alias for p in self.params.values() if p.required]:
            schema["required"] = required
        return schema

    def build_struct(self) -> type[Struct]:
        """Struct type mirroring the model parameters, used for decoding."""
        fields = [
            (p.name, p.annotation, p.default)
            if is_present(p.default)
            else (p.name, p.annotation)
            for p in self.params.values()
        ]
        rename = {p.name: p.alias for p in self.params.values() if p.alias != p.name}
        return defstruct("ToolParams", fields, rename=rename or None)

    @classmethod
    def from_signature(cls, func_sig: Signature) -> "ToolSignature":
        params: dict[str, ToolParam] = {}
        runtime_params: dict[str, RuntimeSpec] = {}
        token_params: list[str] = []

        for name, param in func_sig.parameters.items():
            if param.annotation is CancellationToken:
                token_params.append(name)
                continue

            if get_origin(param.annotation) is Annotated:
                value_type, *metadata = get_args(param.annotation)
            else:
                value_type, metadata = param.annotation, []
            declared = [m for m in metadata if isinstance(m, (ParamSpec, RuntimeSpec))]

            match declared:
                case [ParamSpec() as model_spec]:
                    params[name] = _model_param(param, value_type, model_spec)
                case [RuntimeSpec() as runtime_spec]:
                    runtime_params[name] = runtime_spec
                case []:
                    raise UnannotatedToolParamError(
                        f"Parameter {name!r} must be annotated with "
                        "Annotated[T, spec(...)] or Annotated[T, runtime(...)]"
                    )
                case _:
                    raise IterAIConfigurationError(
                        f"Parameter {name!r} carries more than one spec() or runtime()"
                    )

        return_type = (
            MISSING
            if func_sig.return_annotation is Signature.empty
            else func_sig.return_annotation
        )
        return cls(
            params=params,
            runtime_params=runtime_params,
            token_params=token_params,
            return_type=return_type,
        )
