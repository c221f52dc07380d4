from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Mapping
from typing import TypeVar

from opentelemetry import trace

K = TypeVar("K")
V = TypeVar("V")

tracer = trace.get_tracer(__name__)


async def fan_out(stage: str, calls: Mapping[K, Awaitable[V]]) -> dict[K, V]:
    """Run every call concurrently and wait for all of them.

    The first failure cancels the remaining branches and is re-raised; a
    cancelled caller cancels every branch before the cancellation propagates.
    """

    with tracer.start_as_current_span("review.fan_out") as span:
        span.set_attribute("review.stage", stage)
        span.set_attribute("review.branches", len(calls))
        tasks: dict[K, asyncio.Task[V]] = {key: asyncio.ensure_future(call) for key, call in calls.items()}
        if not tasks:
            return {}
        try:
            done, pending = await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await _cancel_all(tasks.values())
            raise

        errors = [task.exception() for task in done if not task.cancelled() and task.exception() is not None]
        if errors:
            await _cancel_all(pending)
            span.set_attribute("review.failed", True)
            raise errors[0]  # type: ignore[misc]
        return {key: task.result() for key, task in tasks.items()}


async def _cancel_all(tasks) -> None:
    tasks = list(tasks)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
