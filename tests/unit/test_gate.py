"""Tests for the sync ConcurrencyGate."""

import asyncio

import pytest

from reviewsync.gate import CapacityExceeded, ConcurrencyGate


def test_admits_up_to_capacity():
    gate = ConcurrencyGate(capacity=3)
    assert [gate.try_acquire() for _ in range(4)] == [True, True, True, False]
    assert gate.in_flight == 3
    assert gate.available == 0


def test_release_frees_a_slot():
    gate = ConcurrencyGate(capacity=1)
    assert gate.try_acquire()
    assert not gate.try_acquire()
    gate.release()
    assert gate.try_acquire()


def test_over_release_is_an_error():
    gate = ConcurrencyGate()
    with pytest.raises(RuntimeError):
        gate.release()


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        ConcurrencyGate(capacity=0)


@pytest.mark.asyncio
async def test_slot_context_manager_releases_on_error():
    gate = ConcurrencyGate(capacity=1)
    with pytest.raises(KeyError):
        async with gate.slot():
            assert gate.in_flight == 1
            raise KeyError("boom")
    assert gate.in_flight == 0


@pytest.mark.asyncio
async def test_slot_rejects_when_full():
    gate = ConcurrencyGate(capacity=1)
    async with gate.slot():
        with pytest.raises(CapacityExceeded, match="try again"):
            async with gate.slot():
                pass


@pytest.mark.asyncio
async def test_drain_waits_for_every_slot():
    gate = ConcurrencyGate(capacity=2)
    gate.try_acquire()
    gate.try_acquire()

    drain = asyncio.create_task(gate.drain())
    await asyncio.sleep(0)
    gate.release()
    await asyncio.sleep(0)
    assert not drain.done()

    gate.release()
    await asyncio.wait_for(drain, timeout=1)
    assert gate.in_flight == 0


@pytest.mark.asyncio
async def test_drain_on_idle_gate_returns_immediately():
    await asyncio.wait_for(ConcurrencyGate().drain(), timeout=1)


@pytest.mark.asyncio
async def test_concurrent_requests_admit_exactly_capacity():
    gate = ConcurrencyGate(capacity=3)
    release = asyncio.Event()
    admitted = []

    async def request(i):
        if gate.try_acquire():
            admitted.append(i)
            try:
                await release.wait()
            finally:
                gate.release()

    tasks = [asyncio.create_task(request(i)) for i in range(10)]
    await asyncio.sleep(0)
    assert len(admitted) == 3
    release.set()
    await asyncio.gather(*tasks)
    assert gate.in_flight == 0
