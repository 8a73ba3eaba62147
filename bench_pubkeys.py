#!/usr/bin/env python3
"""
Benchmark set membership lookups against pubkeys collected by download_pubkeys.py.

A set is filled with seeded random 32-byte keys, then every recorded pubkey is
looked up in it, pass after pass, for at least `--min-work` seconds. The same
work is repeated with each block's pubkeys split across a thread pool.
"""

import argparse
import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Dict, List, Optional, Sequence, Set

import numpy as np
from tabulate import tabulate

from download_pubkeys import PUBKEY_LEN, parse_pubkey

Blocks = Dict[int, List[bytes]]


def load_blocks(path: Path) -> Blocks:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    blocks: Blocks = {}
    for slot, block in data.items():
        blocks[int(slot)] = [parse_pubkey(k) for k in block["pubkeys"]]
    return dict(sorted(blocks.items()))


def random_pubkeys(seed: int, count: int) -> Set[bytes]:
    rng = np.random.default_rng(seed)
    keys: Set[bytes] = set()
    while len(keys) < count:
        missing = count - len(keys)
        buf = rng.bytes(PUBKEY_LEN * missing)
        keys.update(buf[i : i + PUBKEY_LEN] for i in range(0, len(buf), PUBKEY_LEN))
    return keys


def count_hits(keys: Set[bytes], pubkeys: Sequence[bytes]) -> int:
    return sum(1 for k in pubkeys if k in keys)


def split_chunks(items: Sequence[bytes], parts: int) -> List[Sequence[bytes]]:
    if not items:
        return []
    size = max(1, -(-len(items) // max(1, parts)))
    return [items[i : i + size] for i in range(0, len(items), size)]


@dataclass
class BenchResult:
    name: str
    slots: int
    total_ops: int
    iters: int
    elapsed: float
    hits: int

    @property
    def per_pass(self) -> float:
        return self.elapsed / self.iters

    @property
    def per_block(self) -> Optional[float]:
        return self.per_pass / self.slots if self.slots else None

    @property
    def per_pubkey(self) -> Optional[float]:
        return self.elapsed / self.total_ops if self.total_ops else None


def bench_sequential(blocks: Blocks, keys: Set[bytes], min_work: float) -> BenchResult:
    ts = perf_counter()
    iters = total_ops = hits = 0
    while iters == 0 or perf_counter() - ts < min_work:
        iters += 1
        for pubkeys in blocks.values():
            total_ops += len(pubkeys)
            for pubkey in pubkeys:
                if pubkey in keys:
                    hits += 1
    return BenchResult("sequential", len(blocks), total_ops, iters, perf_counter() - ts, hits)


def bench_parallel(
    blocks: Blocks, keys: Set[bytes], min_work: float, workers: int
) -> BenchResult:
    chunked = {slot: split_chunks(pubkeys, workers) for slot, pubkeys in blocks.items()}
    with ThreadPoolExecutor(max_workers=workers) as executor:
        ts = perf_counter()
        iters = total_ops = hits = 0
        while iters == 0 or perf_counter() - ts < min_work:
            iters += 1
            for slot, pubkeys in blocks.items():
                total_ops += len(pubkeys)
                hits += sum(
                    executor.map(lambda chunk: count_hits(keys, chunk), chunked[slot])
                )
        elapsed = perf_counter() - ts
    return BenchResult(f"parallel x{workers}", len(blocks), total_ops, iters, elapsed, hits)


def _fmt_secs(value: Optional[float]) -> str:
    if value is None:
        return "-"
    if value >= 1.0:
        return f"{value:.3f}s"
    if value >= 1e-3:
        return f"{value * 1e3:.3f}ms"
    if value >= 1e-6:
        return f"{value * 1e6:.3f}us"
    return f"{value * 1e9:.1f}ns"


def format_results(results: List[BenchResult]) -> str:
    rows = [
        [
            r.name,
            r.slots,
            r.total_ops,
            r.iters,
            _fmt_secs(r.per_pass),
            _fmt_secs(r.per_block),
            _fmt_secs(r.per_pubkey),
            r.hits,
        ]
        for r in results
    ]
    headers = ["bench", "slots", "total ops", "iters", "per pass", "per block", "per pubkey", "hits"]
    return tabulate(rows, headers=headers, tablefmt="github")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Benchmark set lookups of collected pubkeys (sequential vs thread pool)."
    )
    parser.add_argument("-i", "--input", default="data.json", help="Input JSON from download_pubkeys.py")
    parser.add_argument("-s", "--seed", type=int, default=42, help="Seed for the random keys")
    parser.add_argument("-m", "--min-work", type=float, default=30.0, help="Minimum seconds per bench")
    parser.add_argument("--set-size", type=int, default=1_000_000, help="Random keys in the lookup set")
    parser.add_argument("--workers", type=int, default=4, help="Thread pool size for the parallel bench")
    args = parser.parse_args()

    input_path = Path(args.input).expanduser().resolve()
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    ts = perf_counter()
    blocks = load_blocks(input_path)
    print(f"Total slots: {len(blocks)}, elapsed: {_fmt_secs(perf_counter() - ts)}")

    results: List[BenchResult] = []
    for name in ("sequential", "parallel"):
        ts = perf_counter()
        keys = random_pubkeys(args.seed, args.set_size)
        print(f"Fill set with len {len(keys)} in: {_fmt_secs(perf_counter() - ts)}")
        if name == "sequential":
            results.append(bench_sequential(blocks, keys, args.min_work))
        else:
            results.append(bench_parallel(blocks, keys, args.min_work, args.workers))

    print(format_results(results))


if __name__ == "__main__":
    main()
