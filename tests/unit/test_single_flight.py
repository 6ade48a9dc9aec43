import asyncio

import pytest

from swipefeed.infra.single_flight import SingleFlight


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_run():
    flight: SingleFlight[int] = SingleFlight()
    gate = asyncio.Event()
    runs = 0

    async def job():
        nonlocal runs
        runs += 1
        await gate.wait()
        return 42

    first = asyncio.create_task(flight.run(job))
    second = asyncio.create_task(flight.run(job))
    await asyncio.sleep(0)
    assert flight.in_flight
    gate.set()
    assert await asyncio.gather(first, second) == [42, 42]
    assert runs == 1
    assert not flight.in_flight


@pytest.mark.asyncio
async def test_failure_is_shared_and_slot_released():
    flight: SingleFlight[int] = SingleFlight()

    async def boom():
        raise RuntimeError("down")

    with pytest.raises(RuntimeError):
        await flight.run(boom)
    assert not flight.in_flight

    async def ok():
        return 1

    assert await flight.run(ok) == 1


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_job():
    flight: SingleFlight[str] = SingleFlight()
    gate = asyncio.Event()

    async def job():
        await gate.wait()
        return "done"

    impatient = asyncio.create_task(flight.run(job))
    patient = asyncio.create_task(flight.run(job))
    await asyncio.sleep(0)
    impatient.cancel()
    with pytest.raises(asyncio.CancelledError):
        await impatient
    gate.set()
    assert await patient == "done"
