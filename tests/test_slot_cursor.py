"""
Unit tests for SlotCursor.

Tests:
- Window requests and descending dispatch
- Truncation by block time
- Exhaustion and failure propagation
- Concurrent takers
"""

import asyncio

import pytest

from download_pubkeys import SlotCursor
from solana_rpc import RetriesExhaustedError, RpcError

STOP = 1_700_000_000


def lister_for(universe, calls=None):
    universe = sorted(universe)

    async def list_slots(start_slot, end_slot):
        if calls is not None:
            calls.append((start_slot, end_slot))
        await asyncio.sleep(0)
        return [s for s in universe if start_slot <= s <= end_slot]

    return list_slots


async def drain(cursor):
    out = []
    while True:
        slot = await cursor.take_next()
        if slot is None:
            return out
        out.append(slot)


class TestWindows:
    @pytest.mark.asyncio
    async def test_first_window_dispatches_descending(self):
        calls = []
        cursor = SlotCursor(lister_for(range(1001, 2001), calls), 2000, STOP)

        assert await cursor.take_next() == 2000
        assert calls == [(1000, 2000)]
        assert cursor.end_slot == 1000
        assert len(cursor.pending) == 999

        taken = [2000]
        for _ in range(999):
            taken.append(await cursor.take_next())
        assert taken == list(range(2000, 1000, -1))
        assert cursor.pending == ()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_empty_pending_requests_next_window(self):
        calls = []
        cursor = SlotCursor(lister_for(range(1, 2001), calls), 2000, STOP)
        for _ in range(1001):
            await cursor.take_next()

        assert await cursor.take_next() == 999
        assert calls == [(1000, 2000), (0, 999)]

    @pytest.mark.asyncio
    async def test_windows_never_overlap(self):
        universe = [s for s in range(0, 3500) if s % 7 != 0]
        calls = []
        cursor = SlotCursor(lister_for(universe, calls), 3499, STOP)

        taken = await drain(cursor)

        assert taken == sorted(universe, reverse=True)
        for (_, prev_end), (_, next_end) in zip(calls, calls[1:]):
            assert next_end < prev_end

    @pytest.mark.asyncio
    async def test_boundary_is_monotone(self):
        universe = [s for s in range(0, 4200) if s % 3]
        cursor = SlotCursor(lister_for(universe), 4199, STOP)
        seen = []
        while await cursor.take_next() is not None:
            seen.append(cursor.end_slot)
        seen.append(cursor.end_slot)

        numeric = [b for b in seen if b is not None]
        assert numeric == sorted(numeric, reverse=True)
        first_none = seen.index(None)
        assert all(b is None for b in seen[first_none:])

    @pytest.mark.asyncio
    async def test_empty_window_exhausts(self):
        calls = []
        cursor = SlotCursor(lister_for([], calls), 500, STOP)

        assert await cursor.take_next() is None
        assert cursor.end_slot is None
        assert calls == [(0, 500)]

    @pytest.mark.asyncio
    async def test_done_is_terminal(self):
        calls = []
        cursor = SlotCursor(lister_for([5, 6, 7], calls), 10, STOP)

        assert await drain(cursor) == [7, 6, 5]
        for _ in range(3):
            assert await cursor.take_next() is None
        assert calls == [(0, 10), (0, 4)]


class TestTruncation:
    @pytest.mark.asyncio
    async def test_old_block_truncates_and_exhausts(self):
        calls = []
        cursor = SlotCursor(lister_for(range(1001, 2001), calls), 2000, STOP)
        for _ in range(500):
            await cursor.take_next()

        await cursor.truncate_below(1500, STOP - 1)

        assert cursor.end_slot is None
        assert all(s >= 1500 for s in cursor.pending)
        assert await drain(cursor) == [1500]
        assert await cursor.take_next() is None
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_recent_block_is_ignored(self):
        cursor = SlotCursor(lister_for(range(1001, 2001)), 2000, STOP)
        await cursor.take_next()
        before = cursor.pending

        await cursor.truncate_below(1500, STOP)

        assert cursor.pending == before
        assert cursor.end_slot == 1000

    @pytest.mark.asyncio
    async def test_truncation_is_idempotent_and_monotone(self):
        cursor = SlotCursor(lister_for(range(1001, 2001)), 2000, STOP)
        await cursor.take_next()

        await cursor.truncate_below(1700, STOP - 5)
        after_first = cursor.pending
        await cursor.truncate_below(1700, STOP - 5)
        assert cursor.pending == after_first
        await cursor.truncate_below(1200, STOP - 1)
        assert cursor.pending == after_first
        await cursor.truncate_below(1800, STOP - 1)
        assert len(cursor.pending) <= len(after_first)
        assert all(s >= 1800 for s in cursor.pending)

    @pytest.mark.asyncio
    async def test_truncation_during_window_request_drops_result(self):
        release = asyncio.Event()
        calls = []

        async def list_slots(start_slot, end_slot):
            calls.append((start_slot, end_slot))
            await release.wait()
            return list(range(1001, 2001))

        cursor = SlotCursor(list_slots, 2000, STOP)
        taker = asyncio.ensure_future(cursor.take_next())
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        # a sibling saw an old block in a previous window
        await cursor.truncate_below(2500, STOP - 1)
        release.set()

        assert await taker is None
        assert cursor.pending == ()
        assert cursor.end_slot is None
        assert calls == [(1000, 2000)]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_no_duplicate_dispatch(self):
        universe = [s for s in range(0, 5000) if s % 5 != 3]
        cursor = SlotCursor(lister_for(universe), 4999, STOP)

        async def taker():
            got = []
            while True:
                slot = await cursor.take_next()
                if slot is None:
                    return got
                got.append(slot)
                await asyncio.sleep(0)

        results = await asyncio.gather(*[taker() for _ in range(8)])
        merged = [s for got in results for s in got]

        assert len(merged) == len(set(merged))
        assert set(merged) == set(universe)

    @pytest.mark.asyncio
    async def test_single_window_request_in_flight(self):
        calls = []
        release = asyncio.Event()

        async def list_slots(start_slot, end_slot):
            calls.append((start_slot, end_slot))
            await release.wait()
            return [1998, 1999, 2000]

        cursor = SlotCursor(list_slots, 2000, STOP)
        takers = [asyncio.ensure_future(cursor.take_next()) for _ in range(3)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        release.set()

        assert sorted(await asyncio.gather(*takers)) == [1998, 1999, 2000]
        assert len(calls) == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_window_failure_is_not_done(self):
        async def list_slots(start_slot, end_slot):
            err = RpcError("getBlocks", "node is behind")
            raise RetriesExhaustedError(f"get slots [{start_slot}, {end_slot}]", 5, err) from err

        cursor = SlotCursor(list_slots, 2000, STOP)

        with pytest.raises(RetriesExhaustedError, match=r"get slots \[1000, 2000\]"):
            await cursor.take_next()
        assert cursor.end_slot == 2000

    @pytest.mark.asyncio
    async def test_window_failure_reaches_every_waiter(self):
        release = asyncio.Event()

        async def list_slots(start_slot, end_slot):
            await release.wait()
            raise RpcError("getBlocks", "boom")

        cursor = SlotCursor(list_slots, 2000, STOP)
        takers = [asyncio.ensure_future(cursor.take_next()) for _ in range(2)]
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(*takers, return_exceptions=True)
        assert all(isinstance(r, RpcError) for r in results)
