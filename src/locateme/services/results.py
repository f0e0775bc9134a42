"""
Explicit step results for the read-through cache.

Each step of the device-list flow returns ``Ok`` or ``Err`` instead of raising,
so the caller decides the next transition (serve, refresh, fall back).
"""

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    reason: str
    exception: Exception | None = None


Result = Ok[T] | Err
