#!/usr/bin/env python3
"""
Minimal async Solana JSON-RPC client shared by the download workers.

Notes:
- One aiohttp session per run; every worker issues requests through the same client.
- Per-client semaphore caps in-flight requests; optional global token bucket caps RPS.
- `with_retries` wraps any call with a fixed number of attempts and a fixed backoff.
"""

import asyncio
import json
import sys
from collections import deque
from time import monotonic
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

import aiohttp

T = TypeVar("T")

REQUEST_TIMEOUT_SEC = 60


class RpcError(RuntimeError):
    """Non-200 response or JSON-RPC error object."""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        super().__init__(f"RPC error for {method}: {message}")
        self.method = method
        self.code = code


class RetriesExhaustedError(RuntimeError):
    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error!r}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


# =====================
# Rate limiter
# =====================


class AsyncTokenBucket:
    """At most `rate_per_sec` permits inside any sliding one-second window."""

    def __init__(
        self,
        rate_per_sec: int,
        clock: Callable[[], float] = monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if rate_per_sec < 1:
            raise ValueError("rate_per_sec must be >= 1")
        self.rate = rate_per_sec
        self._clock = clock
        self._sleep = sleep
        self._granted: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self, permits: int = 1) -> None:
        if permits <= 0:
            return
        if permits > self.rate:
            raise ValueError(f"cannot acquire {permits} permits at {self.rate}/s")
        while True:
            async with self._lock:
                now = self._clock()
                while self._granted and (now - self._granted[0]) >= 1.0:
                    self._granted.popleft()
                overflow = len(self._granted) + permits - self.rate
                if overflow <= 0:
                    self._granted.extend([now] * permits)
                    return
                # wait until the `overflow` oldest grants leave the window
                wait = 1.0 - (now - self._granted[overflow - 1])
            await self._sleep(max(0.0, wait))


# =====================
# RPC client
# =====================


class RpcClient:
    def __init__(
        self,
        url: str,
        session: aiohttp.ClientSession,
        concurrency: int,
        limiter: Optional[AsyncTokenBucket] = None,
        commitment: str = "finalized",
    ):
        self.url = url
        self.session = session
        self.semaphore = asyncio.Semaphore(concurrency)
        self.limiter = limiter
        self.commitment = commitment
        self._id = 0

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        async with self.semaphore:
            if self.limiter is not None:
                await self.limiter.acquire()
            self._id += 1
            payload = {
                "jsonrpc": "2.0",
                "id": self._id,
                "method": method,
                "params": params,
            }
            async with self.session.post(
                self.url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SEC),
            ) as resp:
                if resp.status != 200:
                    raise RpcError(method, f"HTTP {resp.status}")
                data = await resp.json(loads=json.loads)
                if not isinstance(data, dict):
                    raise RpcError(method, f"unexpected response body {data!r:.200}")
                if "error" in data:
                    err = data["error"]
                    if isinstance(err, dict):
                        raise RpcError(method, str(err.get("message")), err.get("code"))
                    raise RpcError(method, str(err))
                return data.get("result")

    async def get_slot(self) -> int:
        res = await self._rpc("getSlot", [{"commitment": self.commitment}])
        return int(res)

    async def get_block_time(self, slot: int) -> Optional[int]:
        res = await self._rpc("getBlockTime", [slot])
        return int(res) if res is not None else None

    async def get_blocks(self, start_slot: int, end_slot: int) -> List[int]:
        # Ascending list of produced slots in [start_slot, end_slot]
        res = await self._rpc(
            "getBlocks", [start_slot, end_slot, {"commitment": self.commitment}]
        )
        return [int(s) for s in (res or [])]

    async def get_block(self, slot: int) -> Optional[Dict[str, Any]]:
        res = await self._rpc(
            "getBlock",
            [
                slot,
                {
                    "encoding": "json",
                    "maxSupportedTransactionVersion": 0,
                    "transactionDetails": "full",
                    "rewards": False,
                    "commitment": self.commitment,
                },
            ],
        )
        return res


# =====================
# Retries
# =====================


async def with_retries(
    call: Callable[[], Awaitable[T]],
    operation: str,
    attempts: int = 5,
    backoff_sec: float = 10.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run `call` up to `attempts` times, sleeping `backoff_sec` between failures.

    The last error is raised as the cause of `RetriesExhaustedError`.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    last_exc: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except (RpcError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            last_exc = exc
            print(f"failed to {operation}: {exc!r}", file=sys.stderr)
            if attempt < attempts:
                await sleep(backoff_sec)
    raise RetriesExhaustedError(operation, attempts, last_exc) from last_exc
