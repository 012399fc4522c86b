"""
Ok/Err values returned by best-effort stage calls.

Stages that are allowed to degrade (grouping, cover enhancement, analysis)
return one of these instead of swallowing the failure, so the orchestrator
decides the fallback.
"""

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: str

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]
