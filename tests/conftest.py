import asyncio
from typing import Any, Dict, Iterable, List, Optional

import base58
import pytest

from solana_rpc import RpcError


def make_pubkey(i: int) -> str:
    return base58.b58encode(bytes([i % 256]) * 32).decode("ascii")


def make_block(block_time: Optional[int], *key_lists: List[Any]) -> Dict[str, Any]:
    return {
        "blockTime": block_time,
        "transactions": [
            {"transaction": {"message": {"accountKeys": list(keys)}}}
            for keys in key_lists
        ],
    }


class FakeLedger:
    """In-memory stand-in for RpcClient. Block time of a slot defaults to the slot itself.

    `failing_blocks` / `failing_windows` map a slot (or a window's end slot) to the
    number of calls that fail before it answers; `block_delays` maps a slot to the
    number of event-loop turns its getBlock takes.
    """

    def __init__(self, slots: Iterable[int], blocks: Optional[Dict[int, Any]] = None):
        self.slots = sorted(slots)
        self.blocks: Dict[int, Any] = {
            s: make_block(s, [make_pubkey(s)]) for s in self.slots
        }
        self.blocks.update(blocks or {})
        self.failing_blocks: Dict[int, int] = {}
        self.failing_windows: Dict[int, int] = {}
        self.block_delays: Dict[int, int] = {}
        self.get_blocks_calls: List[tuple] = []
        self.get_block_calls: List[int] = []

    async def get_slot(self) -> int:
        await asyncio.sleep(0)
        return self.slots[-1]

    async def get_block_time(self, slot: int) -> Optional[int]:
        await asyncio.sleep(0)
        block = self.blocks.get(slot)
        return block["blockTime"] if block else None

    async def get_blocks(self, start_slot: int, end_slot: int) -> List[int]:
        self.get_blocks_calls.append((start_slot, end_slot))
        await asyncio.sleep(0)
        if self.failing_windows.get(end_slot, 0) > 0:
            self.failing_windows[end_slot] -= 1
            raise RpcError("getBlocks", f"range [{start_slot}, {end_slot}] unavailable", -32004)
        return [s for s in self.slots if start_slot <= s <= end_slot]

    async def get_block(self, slot: int) -> Optional[Dict[str, Any]]:
        self.get_block_calls.append(slot)
        for _ in range(self.block_delays.get(slot, 0) + 1):
            await asyncio.sleep(0)
        if self.failing_blocks.get(slot, 0) > 0:
            self.failing_blocks[slot] -= 1
            raise RpcError("getBlock", f"slot {slot} unavailable", -32004)
        return self.blocks.get(slot)


@pytest.fixture
def ledger_factory():
    return FakeLedger
