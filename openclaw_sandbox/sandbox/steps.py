"""Best-effort execution of the cold-start setup sequence."""

import inspect
import time
from collections.abc import Awaitable, Callable

from ..log_config import StructuredLogger
from .types import StepResult

Step = Callable[[], StepResult | list[StepResult] | Awaitable[StepResult | list[StepResult]]]


class SetupRunner:
    """
    Run setup steps in order, never letting one failure stop the sequence.

    A step returns a ``StepResult`` (or a list of them). Unexpected exceptions
    become failed results. Every failure is logged as a warning.
    """

    def __init__(self, log: StructuredLogger):
        self.log = log
        self.results: list[StepResult] = []

    async def run(self, name: str, step: Step) -> list[StepResult]:
        start = time.monotonic()
        try:
            outcome = step()
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            outcome = StepResult.failure(name, f"{type(e).__name__}: {e}")

        results = outcome if isinstance(outcome, list) else [outcome]
        duration_ms = int((time.monotonic() - start) * 1000)
        for result in results:
            if result.ok:
                self.log.debug("setup.step_ok", step=result.name, duration_ms=duration_ms)
            else:
                self.log.warn(
                    "setup.step_failed",
                    step=result.name,
                    warning=result.warning,
                    duration_ms=duration_ms,
                )
        self.results.extend(results)
        return results

    @property
    def failed(self) -> list[StepResult]:
        return [result for result in self.results if not result.ok]
