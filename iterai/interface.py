from typing import Any, Literal, TypeGuard

from msgspec import UNSET, Struct, UnsetType
from msgspec.structs import asdict
from typing_extensions import dataclass_transform


@dataclass_transform(frozen_default=True)
class Record(Struct, frozen=True, kw_only=True):
    def asdict(self) -> dict[str, Any]:
        return asdict(self)


class _Missed:
    def __bool__(self) -> Literal[False]:
        return False

    def __repr__(self) -> str:
        return "iterai.MISSING"


type Maybe[T] = T | _Missed

MISSING = _Missed()


def is_present[T](value: Maybe[T]) -> TypeGuard[T]:
    return value is not MISSING


type Unset[T] = UnsetType | T


def is_set[T](value: Unset[T]) -> TypeGuard[T]:
    return value is not UNSET


def supports_equality(value: Any) -> bool:
    """Whether `value` can take part in equality grouping.

    Only hashable values whose `==` is reflexive qualify; `None` never does.
    """
    if value is None:
        return False
    try:
        hash(value)
    except TypeError:
        return False
    try:
        return bool(value == value)
    except Exception:
        return False
