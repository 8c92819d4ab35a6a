"""Outcome values and exceptions shared by the sync components.

Remote calls never raise for expected failures. They return one of
``Ok``, ``NetworkError`` or ``RejectedError`` and the caller branches on
the type. Exceptions are kept for local durability failures and bugs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None


@dataclass(frozen=True)
class NetworkError:
    """Transient, connectivity-related failure. Retry with backoff."""

    message: str


@dataclass(frozen=True)
class RejectedError:
    """The remote store refused the call (auth, validation, missing row). Do not retry blindly."""

    message: str
    status: int | None = None


@dataclass(frozen=True)
class ConflictDetected:
    """Not a failure: the operation's target diverged from the remote record."""

    conflict: Any


GatewayResult = Union[Ok[Any], NetworkError, RejectedError]


def is_ok(result: Any) -> bool:
    return isinstance(result, Ok)


class TaskSyncError(RuntimeError):
    pass


class QueuePersistenceError(TaskSyncError):
    """Local durability failure: the operation could not be written to the queue."""


class UnknownTableError(TaskSyncError):
    pass


class RecordNotFoundError(TaskSyncError, LookupError):
    pass
