import asyncio

import pytest

from assignment_review.services.fanout import fan_out


def test_fan_out_returns_results_by_key() -> None:
    async def value(result: int, delay: float) -> int:
        await asyncio.sleep(delay)
        return result

    results = asyncio.run(fan_out("test", {"slow": value(1, 0.02), "fast": value(2, 0.0)}))

    assert results == {"slow": 1, "fast": 2}


def test_fan_out_cancels_siblings_on_failure() -> None:
    cancelled: list[str] = []

    async def hang() -> None:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append("hang")
            raise

    async def fail() -> None:
        await asyncio.sleep(0)
        raise LookupError("linkedin store unreachable")

    with pytest.raises(LookupError, match="linkedin store unreachable"):
        asyncio.run(fan_out("test", {"hang": hang(), "fail": fail()}))

    assert cancelled == ["hang"]


def test_fan_out_with_no_branches() -> None:
    assert asyncio.run(fan_out("test", {})) == {}
