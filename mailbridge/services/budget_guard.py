import time
from collections.abc import Awaitable, Callable
from typing import Any


class BudgetExceeded(Exception):
    """Raised when the invocation is close to its wall-clock ceiling.

    This is a hand-off signal, not a failure: the caller moves the work
    in ``remaining`` to a background continuation.
    """

    def __init__(self, elapsed_ms: float, remaining: list | None = None):
        super().__init__(f"execution budget exceeded after {int(elapsed_ms)}ms")
        self.elapsed_ms = elapsed_ms
        self.remaining = remaining


class ExecutionBudget:
    def __init__(
        self,
        budget_ms: int,
        safety_margin_ms: int = 0,
        start: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.budget_ms = budget_ms
        self.safety_margin_ms = safety_margin_ms
        self.clock = clock
        self.start = clock() if start is None else start

    @property
    def elapsed_ms(self) -> float:
        return (self.clock() - self.start) * 1000

    @property
    def remaining_ms(self) -> float:
        return self.budget_ms - self.safety_margin_ms - self.elapsed_ms

    def exceeded(self) -> bool:
        return self.remaining_ms < 0

    def check(self, remaining: list | None = None) -> None:
        if self.exceeded():
            raise BudgetExceeded(self.elapsed_ms, remaining=remaining)


async def with_budget(
    start_time: float,
    budget_ms: int,
    immediate_fn: Callable[[ExecutionBudget], Awaitable[Any]],
    background_fn: Callable[[BudgetExceeded], Awaitable[Any]],
    safety_margin_ms: int = 0,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    budget = ExecutionBudget(budget_ms, safety_margin_ms=safety_margin_ms, start=start_time, clock=clock)
    try:
        return await immediate_fn(budget)
    except BudgetExceeded as signal:
        return await background_fn(signal)
