"""
Tests for the AdmissionController.

This module tests:
- At most N holders at any time
- Strict arrival-order admission
- Cancellation while waiting, and after a slot was handed over
"""

import asyncio

import pytest

from colony.agents.exceptions import ConfigurationError
from colony.coordination.admission import AdmissionController


class TestAdmissionController:
    """Tests for AdmissionController."""

    def test_invalid_size(self):
        with pytest.raises(ConfigurationError) as exc_info:
            AdmissionController(0)

        assert exc_info.value.config_field == "max_concurrent_calls"

    @pytest.mark.asyncio
    async def test_never_exceeds_size(self):
        controller = AdmissionController(2)
        active = 0
        peak = 0

        async def call():
            nonlocal active, peak
            async with controller.slot():
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(call() for _ in range(6)))

        assert peak == 2
        assert controller.in_use == 0

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        controller = AdmissionController(1)
        order = []
        await controller.acquire()

        async def waiter(tag):
            async with controller.slot():
                order.append(tag)

        tasks = []
        for tag in ("a", "b", "c"):
            tasks.append(asyncio.create_task(waiter(tag)))
            await asyncio.sleep(0)

        assert controller.waiting == 3
        controller.release()
        await asyncio.gather(*tasks)

        assert order == ["a", "b", "c"]
        assert controller.in_use == 0

    @pytest.mark.asyncio
    async def test_late_arrival_does_not_overtake(self):
        controller = AdmissionController(1)
        order = []
        await controller.acquire()

        async def waiter(tag):
            await controller.acquire()
            order.append(tag)
            controller.release()

        first = asyncio.create_task(waiter("first"))
        await asyncio.sleep(0)
        controller.release()
        # Arrives after the slot was handed to "first", before "first" resumes
        late = asyncio.create_task(waiter("late"))
        await asyncio.gather(first, late)

        assert order == ["first", "late"]

    @pytest.mark.asyncio
    async def test_cancel_while_waiting(self):
        controller = AdmissionController(1)
        await controller.acquire()

        task = asyncio.create_task(controller.acquire())
        await asyncio.sleep(0)
        assert controller.waiting == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert controller.waiting == 0
        controller.release()
        assert controller.in_use == 0

    @pytest.mark.asyncio
    async def test_cancel_after_handoff_passes_slot_on(self):
        controller = AdmissionController(1)
        await controller.acquire()

        task = asyncio.create_task(controller.acquire())
        await asyncio.sleep(0)
        controller.release()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert controller.in_use == 0
        await asyncio.wait_for(controller.acquire(), timeout=1)
        assert controller.in_use == 1

    @pytest.mark.asyncio
    async def test_over_release(self):
        controller = AdmissionController(1)

        with pytest.raises(RuntimeError):
            controller.release()
