"""
Typed errors raised by the personalization engine.

Every failure that crosses the engine boundary carries the operation name
and, where one applies, the user it was running for.
"""
import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class PersonalizationError(Exception):
    """Base class for engine errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        self.message = message
        self.operation = operation
        self.user_id = user_id
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.user_id:
            context.append(f"user_id={self.user_id}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class StoreError(PersonalizationError):
    """Interaction or preference store I/O failure."""


class InteractionLearnerError(StoreError):
    """Store failure surfaced by the interaction learner."""


class ConversionError(PersonalizationError):
    """Preference-to-query conversion (embedding) failure."""


class SearchError(PersonalizationError):
    """Vector index failure."""


class OperationTimeoutError(PersonalizationError):
    """An external call exceeded its deadline."""

    def __init__(
        self,
        operation: str,
        timeout: float,
        user_id: Optional[str] = None,
    ):
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:.2f}s",
            operation=operation,
            user_id=user_id,
        )


class InsufficientDataError(PersonalizationError):
    """Not enough interaction history to learn from. Never leaves the learner."""

    def __init__(self, user_id: str, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(
            f"Need {required} interactions, have {available}",
            operation="analyze_interactions",
            user_id=user_id,
        )


async def with_deadline(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    operation: str,
    user_id: Optional[str] = None,
) -> T:
    """
    Await an external call, bounded by a deadline.

    Args:
        awaitable: The pending call
        timeout: Seconds to wait (None = no deadline)
        operation: Name reported in the timeout error

    Raises:
        OperationTimeoutError: If the deadline passes first
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(operation, timeout or 0.0, user_id=user_id) from e
