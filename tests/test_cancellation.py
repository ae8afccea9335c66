"""Tests for the request-scoped cancellation token."""

from __future__ import annotations

import asyncio

import pytest

from streamrelay.orchestration.cancellation import CancellationToken
from streamrelay.orchestration.errors import CancellationError


@pytest.mark.asyncio
async def test_guard_returns_result_when_not_cancelled() -> None:
    token = CancellationToken()

    async def _value() -> int:
        return 7

    assert await token.guard(_value()) == 7


@pytest.mark.asyncio
async def test_guard_abandons_pending_work_on_cancel() -> None:
    token = CancellationToken()
    started = asyncio.Event()
    finished = False

    async def _slow() -> None:
        nonlocal finished
        started.set()
        await asyncio.sleep(10)
        finished = True

    task = asyncio.create_task(token.guard(_slow()))
    await started.wait()
    token.cancel("stop")

    with pytest.raises(CancellationError) as excinfo:
        await task

    assert finished is False
    assert excinfo.value.details == {"reason": "stop"}
    assert token.reason == "stop"


@pytest.mark.asyncio
async def test_guard_raises_immediately_when_already_cancelled() -> None:
    token = CancellationToken()
    token.cancel()
    ran = False

    async def _work() -> None:
        nonlocal ran
        ran = True

    with pytest.raises(CancellationError):
        await token.guard(_work())

    assert ran is False


@pytest.mark.asyncio
async def test_iterate_yields_until_exhausted() -> None:
    token = CancellationToken()

    async def _numbers():
        for number in range(3):
            yield number

    assert [item async for item in token.iterate(_numbers())] == [0, 1, 2]


@pytest.mark.asyncio
async def test_iterate_stops_on_cancel() -> None:
    token = CancellationToken()
    received = []

    async def _endless():
        yield "first"
        await asyncio.Event().wait()
        yield "never"

    with pytest.raises(CancellationError):
        async for item in token.iterate(_endless()):
            received.append(item)
            asyncio.get_running_loop().call_soon(token.cancel)

    assert received == ["first"]


def test_pause_is_independent_of_cancellation() -> None:
    token = CancellationToken()

    token.pause()
    assert token.paused is True
    assert token.cancelled is False
    token.raise_if_cancelled()

    token.resume()
    assert token.paused is False
