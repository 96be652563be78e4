"""Discriminated results returned by each step of the callback flow."""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from wetools_auth.core.errors import ErrorKind

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Fallback:
    """The step could not produce a value; continue on the degraded path."""

    reason: str


@dataclass(frozen=True)
class Fail:
    kind: ErrorKind
    detail: str


StepResult = Union[Ok[T], Fallback, Fail]
