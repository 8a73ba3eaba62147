#!/usr/bin/env python3
"""
Walk Solana history backward from a slot and collect the pubkeys referenced by each block.

Overview:
- A shared SlotCursor hands out slots to N async workers. It requests windows of
  WINDOW_SIZE slots (getBlocks) moving backward; within a window the highest slot
  goes first, and every window sits strictly below the previous one.
- Each worker fetches the block (getBlock), skips it when there is no block time,
  and stops the walk once a block older than `start block time - count` is seen:
  buffered slots below that block are dropped and no further windows are requested.
- Every RPC call is retried a fixed number of times with a fixed backoff.
- Results are kept in a BlockStore keyed by slot and written to JSON once all
  workers are done.

Env overrides:
- SOLANA_RPC_URL (else `json_rpc_url` from the Solana CLI config)
- SOLANA_CLI_CONFIG (default ~/.config/solana/cli/config.yml)
- PUBKEYS_CONCURRENCY (default 3)
- PUBKEYS_COLLECT_SECONDS (default 900)
- PUBKEYS_OUT (default data.json)
- PUBKEYS_WINDOW_SIZE (default 1000)
- PUBKEYS_RETRY_ATTEMPTS (default 5) / PUBKEYS_RETRY_BACKOFF_SEC (default 10)
- PUBKEYS_GLOBAL_RPS (default 0, unlimited)
- PUBKEYS_ENDPOINT_CONCURRENCY (default 16)
- PUBKEYS_DEBUG (default 1)
"""

import argparse
import asyncio
import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import aiohttp
import base58
import yaml
from dotenv import load_dotenv

from solana_rpc import (
    AsyncTokenBucket,
    RetriesExhaustedError,
    RpcClient,
    RpcError,
    with_retries,
)

load_dotenv()


# =====================
# CONFIG (env-overridable)
# =====================

RPC_URL = os.environ.get("SOLANA_RPC_URL", "").strip()
SOLANA_CLI_CONFIG = os.environ.get("SOLANA_CLI_CONFIG") or str(
    Path.home() / ".config" / "solana" / "cli" / "config.yml"
)

CONCURRENCY = int(os.environ.get("PUBKEYS_CONCURRENCY", "3"))
COLLECT_SECONDS = int(os.environ.get("PUBKEYS_COLLECT_SECONDS", "900"))  # 15min
OUT_PATH = os.environ.get("PUBKEYS_OUT", "data.json")

WINDOW_SIZE = int(os.environ.get("PUBKEYS_WINDOW_SIZE", "1_000"))
RETRY_ATTEMPTS = int(os.environ.get("PUBKEYS_RETRY_ATTEMPTS", "5"))
RETRY_BACKOFF_SEC = float(os.environ.get("PUBKEYS_RETRY_BACKOFF_SEC", "10"))

GLOBAL_RPS = int(os.environ.get("PUBKEYS_GLOBAL_RPS", "0"))
ENDPOINT_CONCURRENCY = int(os.environ.get("PUBKEYS_ENDPOINT_CONCURRENCY", "16"))
DEBUG = os.environ.get("PUBKEYS_DEBUG", "1") == "1"


class ConfigError(RuntimeError):
    pass


class MalformedPubkeyError(ValueError):
    pass


# =====================
# Pubkeys
# =====================

PUBKEY_LEN = 32


def parse_pubkey(value: Any) -> bytes:
    if not isinstance(value, str) or not value or value != value.strip():
        raise MalformedPubkeyError(f"invalid pubkey {value!r}")
    try:
        raw = base58.b58decode(value)
    except ValueError as exc:
        raise MalformedPubkeyError(f"invalid pubkey {value!r}: {exc}") from exc
    if len(raw) != PUBKEY_LEN:
        raise MalformedPubkeyError(
            f"invalid pubkey {value!r}: decodes to {len(raw)} bytes"
        )
    return raw


def extract_pubkeys(block: Dict[str, Any], slot: Optional[int] = None) -> Set[str]:
    """Union of account keys over all transactions of a `json` encoded block.

    Legacy and v0 messages both carry their static keys in `message.accountKeys`.
    Any transaction without that list is malformed and fails the whole block.
    """
    transactions = block.get("transactions") or []
    if not isinstance(transactions, list):
        raise MalformedPubkeyError(f"slot {slot}: transactions is not a list")

    pubkeys: Set[str] = set()
    for index, tx in enumerate(transactions):
        try:
            keys = tx["transaction"]["message"]["accountKeys"]
        except (KeyError, TypeError) as exc:
            raise MalformedPubkeyError(
                f"slot {slot}: transaction {index} has no message.accountKeys"
            ) from exc
        if not isinstance(keys, list):
            raise MalformedPubkeyError(
                f"slot {slot}: transaction {index} accountKeys is not a list"
            )
        for key in keys:
            try:
                parse_pubkey(key)
            except MalformedPubkeyError as exc:
                raise MalformedPubkeyError(f"slot {slot}: {exc}") from exc
            pubkeys.add(key)
    return pubkeys


# =====================
# Result aggregate
# =====================


@dataclass
class Block:
    block_time: int
    pubkeys: Set[str] = field(default_factory=set)

    def to_json(self) -> Dict[str, Any]:
        return {"block_time": self.block_time, "pubkeys": sorted(self.pubkeys)}


class BlockStore:
    def __init__(self):
        self._blocks: Dict[int, Block] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._blocks)

    async def insert(self, slot: int, block: Block) -> None:
        async with self._lock:
            self._blocks[slot] = block

    async def snapshot(self) -> Dict[int, Block]:
        async with self._lock:
            return dict(sorted(self._blocks.items()))


def unique_pubkeys(blocks: Dict[int, Block]) -> Set[str]:
    acc: Set[str] = set()
    for block in blocks.values():
        acc.update(block.pubkeys)
    return acc


def write_output(path: Path, blocks: Dict[int, Block]) -> None:
    payload = {str(slot): block.to_json() for slot, block in sorted(blocks.items())}
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f)


# =====================
# Slot cursor
# =====================

SlotLister = Callable[[int, int], Awaitable[List[int]]]


class SlotCursor:
    """Pending slots plus the upper bound of the next window, behind one lock.

    `end_slot` is None once the walk is exhausted, either because a window came
    back empty or because a block older than `block_time_stop` was seen.
    The lock is only held for in-memory updates; window requests run outside it
    and at most one is in flight at a time.
    """

    def __init__(
        self,
        list_slots: SlotLister,
        end_slot: int,
        block_time_stop: int,
        window_size: int = WINDOW_SIZE,
    ):
        self._list_slots = list_slots
        self._slots: List[int] = []
        self._end_slot: Optional[int] = end_slot
        self._floor: Optional[int] = None
        self._refill: Optional[asyncio.Future] = None
        self._lock = asyncio.Lock()
        self.block_time_stop = block_time_stop
        self.window_size = window_size

    @property
    def end_slot(self) -> Optional[int]:
        return self._end_slot

    @property
    def pending(self) -> Tuple[int, ...]:
        return tuple(self._slots)

    async def take_next(self) -> Optional[int]:
        while True:
            async with self._lock:
                if self._slots:
                    return self._slots.pop()
                if self._end_slot is None:
                    return None
                if self._refill is None:
                    self._refill = asyncio.ensure_future(
                        self._request_slots(self._end_slot)
                    )
                refill = self._refill
            await asyncio.shield(refill)

    async def _request_slots(self, end_slot: int) -> None:
        start_slot = max(0, end_slot - self.window_size)
        print(f"Request slots [{start_slot}, {end_slot}]")
        try:
            slots = sorted(await self._list_slots(start_slot, end_slot))
        except BaseException:
            async with self._lock:
                self._refill = None
            raise

        async with self._lock:
            self._refill = None
            if self._end_slot is None:
                # truncated while the request was in flight
                self._slots = [s for s in slots if s >= self._floor]
                return
            self._slots = slots
            if slots and slots[0] > 0:
                self._end_slot = slots[0] - 1
            else:
                self._end_slot = None

    async def truncate_below(self, slot: int, block_time: int) -> None:
        if block_time >= self.block_time_stop:
            return
        async with self._lock:
            self._slots = [s for s in self._slots if s >= slot]
            self._floor = slot if self._floor is None else max(self._floor, slot)
            self._end_slot = None


def slot_lister(
    client: RpcClient,
    attempts: int = RETRY_ATTEMPTS,
    backoff_sec: float = RETRY_BACKOFF_SEC,
) -> SlotLister:
    async def list_slots(start_slot: int, end_slot: int) -> List[int]:
        return await with_retries(
            lambda: client.get_blocks(start_slot, end_slot),
            f"get slots [{start_slot}, {end_slot}]",
            attempts,
            backoff_sec,
        )

    return list_slots


# =====================
# Workers
# =====================


async def download_worker(
    client: RpcClient,
    cursor: SlotCursor,
    store: BlockStore,
    attempts: int = RETRY_ATTEMPTS,
    backoff_sec: float = RETRY_BACKOFF_SEC,
) -> None:
    while True:
        slot = await cursor.take_next()
        if slot is None:
            return

        block = await with_retries(
            lambda: client.get_block(slot), f"get block {slot}", attempts, backoff_sec
        )
        block_time = block.get("blockTime") if block else None
        if block_time is None:
            continue

        if DEBUG:
            print(
                f"Download block {slot} with time {block_time}, "
                f"stop time {cursor.block_time_stop}, "
                f"left {block_time - cursor.block_time_stop}"
            )

        if block_time < cursor.block_time_stop:
            await cursor.truncate_below(slot, block_time)
            continue

        pubkeys = extract_pubkeys(block, slot)
        await store.insert(slot, Block(block_time=int(block_time), pubkeys=pubkeys))


async def collect_blocks(
    client: RpcClient,
    cursor: SlotCursor,
    store: BlockStore,
    concurrency: int = CONCURRENCY,
    attempts: int = RETRY_ATTEMPTS,
    backoff_sec: float = RETRY_BACKOFF_SEC,
) -> None:
    """Run `concurrency` workers until the cursor is drained.

    Every worker runs to its own end; the first failure (in completion order)
    is raised once all of them have finished.
    """
    tasks = [
        asyncio.ensure_future(
            download_worker(client, cursor, store, attempts, backoff_sec)
        )
        for _ in range(concurrency)
    ]
    first_exc: Optional[BaseException] = None
    for fut in asyncio.as_completed(tasks):
        try:
            await fut
        except Exception as exc:
            if first_exc is None:
                first_exc = exc
            print(f"Worker failed: {exc}", file=sys.stderr)
    if first_exc is not None:
        raise first_exc


async def download(
    client: RpcClient,
    store: BlockStore,
    from_slot: Optional[int] = None,
    concurrency: int = CONCURRENCY,
    count: int = COLLECT_SECONDS,
    attempts: int = RETRY_ATTEMPTS,
    backoff_sec: float = RETRY_BACKOFF_SEC,
    window_size: int = WINDOW_SIZE,
) -> SlotCursor:
    if from_slot is None:
        slot = await with_retries(
            client.get_slot, "get latest finalized slot", attempts, backoff_sec
        )
    else:
        slot = from_slot
    block_time_start = await with_retries(
        lambda: client.get_block_time(slot),
        f"get block time {slot}",
        attempts,
        backoff_sec,
    )
    if block_time_start is None:
        raise RpcError("getBlockTime", f"no block time for slot {slot}")

    cursor = SlotCursor(
        slot_lister(client, attempts, backoff_sec),
        slot,
        block_time_start - count,
        window_size,
    )
    await collect_blocks(client, cursor, store, concurrency, attempts, backoff_sec)
    return cursor


# =====================
# Main
# =====================


def resolve_rpc_url(
    rpc: Optional[str],
    env_url: str = RPC_URL,
    config_path: str = SOLANA_CLI_CONFIG,
) -> str:
    if rpc:
        return rpc
    if env_url:
        return env_url
    path = Path(config_path).expanduser()
    if not path.exists():
        raise ConfigError(f"no RPC url given and Solana CLI config not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    url = cfg.get("json_rpc_url") if isinstance(cfg, dict) else None
    if not url:
        raise ConfigError(f"json_rpc_url missing in {path}")
    return url


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Collect pubkeys from Solana blocks, walking backward from a slot."
    )
    parser.add_argument(
        "-r",
        "--rpc",
        help="JSON-RPC url. Defaults to SOLANA_RPC_URL or the Solana CLI config.",
    )
    parser.add_argument(
        "-f",
        "--from",
        dest="from_slot",
        type=int,
        help="Slot to walk backward from. Defaults to the latest finalized slot.",
    )
    parser.add_argument(
        "-t",
        "--concurrency",
        type=int,
        default=CONCURRENCY,
        help="Number of concurrent block downloads.",
    )
    parser.add_argument(
        "-c",
        "--count",
        type=int,
        default=COLLECT_SECONDS,
        help="Seconds of block history to collect.",
    )
    parser.add_argument("-o", "--out", default=OUT_PATH, help="Output JSON path")
    args = parser.parse_args(argv)
    if args.concurrency < 1:
        parser.error("--concurrency must be >= 1")
    return args


async def main_async(args: argparse.Namespace) -> int:
    try:
        rpc_url = resolve_rpc_url(args.rpc)
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 1

    limiter = AsyncTokenBucket(GLOBAL_RPS) if GLOBAL_RPS > 0 else None
    store = BlockStore()
    async with aiohttp.ClientSession() as session:
        client = RpcClient(rpc_url, session, ENDPOINT_CONCURRENCY, limiter)
        try:
            await download(client, store, args.from_slot, args.concurrency, args.count)
        except (RetriesExhaustedError, RpcError, MalformedPubkeyError) as exc:
            print(f"Download failed: {exc}", file=sys.stderr)
            print(f"Collected {len(store)} blocks before the failure", file=sys.stderr)
            return 1

    blocks = await store.snapshot()
    write_output(Path(args.out), blocks)
    print(f"Total {len(blocks)} blocks, with {len(unique_pubkeys(blocks))} pubkeys")
    return 0


def main() -> None:
    args = parse_args()
    try:
        code = asyncio.run(main_async(args))
    except KeyboardInterrupt:
        print("Interrupted by user", file=sys.stderr)
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
