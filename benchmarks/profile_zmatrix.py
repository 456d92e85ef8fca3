"""Profile Z-matrix construction across tree shapes and sizes.

Measures wall-clock time, stored entries and peak memory of
``build_z`` for balanced and caterpillar trees, serially and with
joblib workers, and the cost of a cache hit.

Usage::

    python benchmarks/profile_zmatrix.py            # full grid
    python benchmarks/profile_zmatrix.py --quick    # reduced grid for smoke test
    python benchmarks/profile_zmatrix.py --n-jobs 4

Outputs:
    benchmarks/results/zmatrix_profile.csv
"""

from __future__ import annotations

import argparse
import platform
import sys
import time
import tracemalloc
from pathlib import Path

import numpy as np
import pandas as pd

# Ensure the package is importable when running from the repo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))
from phyloglmm import Tree, build_z, clear_z_cache  # noqa: E402

# ------------------------------------------------------------------ #
# Configuration
# ------------------------------------------------------------------ #

BALANCED_DEPTHS_FULL = [6, 8, 10, 12, 14, 16]
CATERPILLAR_TIPS_FULL = [100, 500, 1_000, 2_000, 4_000]

BALANCED_DEPTHS_QUICK = [6, 8, 10]
CATERPILLAR_TIPS_QUICK = [100, 500]

REPEATS = 3
SEED = 42

RESULTS_DIR = Path(__file__).resolve().parent / "results"


# ------------------------------------------------------------------ #
# Tree generators
# ------------------------------------------------------------------ #


def balanced(depth: int, rng: np.random.Generator) -> Tree:
    T = 2**depth

    def node(h: int) -> int:
        return h - T + 1 if h >= T else T + h

    edges = [[node(h // 2), node(h)] for h in range(2, 2 * T)]
    return Tree(edges=edges, edge_lengths=rng.uniform(0.1, 2.0, len(edges)), n_tips=T)


def caterpillar(n_tips: int, rng: np.random.Generator) -> Tree:
    T = n_tips
    edges = [[T + k, T + k + 1] for k in range(1, T - 1)]
    edges += [[T + k, k] for k in range(1, T)]
    edges.append([2 * T - 1, T])
    return Tree(edges=edges, edge_lengths=rng.uniform(0.1, 2.0, len(edges)), n_tips=T)


# ------------------------------------------------------------------ #
# Benchmark helpers
# ------------------------------------------------------------------ #


def _benchmark_one(tree: Tree, n_jobs: int) -> dict:
    tracemalloc.start()
    t0 = time.perf_counter()
    Z = build_z(tree, n_jobs=n_jobs, cache=False)
    elapsed = time.perf_counter() - t0
    _, peak_bytes = tracemalloc.get_traced_memory()
    tracemalloc.stop()
    return {"time_s": elapsed, "peak_memory_bytes": peak_bytes, "nnz": Z.nnz}


def _cache_hit_time(tree: Tree) -> float:
    clear_z_cache()
    build_z(tree)
    t0 = time.perf_counter()
    build_z(tree)
    return time.perf_counter() - t0


def run_grid(shapes: list[tuple[str, int]], n_jobs: int, repeats: int = REPEATS) -> pd.DataFrame:
    """Run every (shape, size, n_jobs) cell and return one row per cell."""
    rng = np.random.default_rng(SEED)
    rows: list[dict] = []
    for done, (shape, size) in enumerate(shapes, start=1):
        tree = balanced(size, rng) if shape == "balanced" else caterpillar(size, rng)
        for jobs in sorted({1, n_jobs}):
            results = [_benchmark_one(tree, jobs) for _ in range(repeats)]
            row = {
                "shape": shape,
                "n_tips": tree.n_tips,
                "n_edges": tree.n_edges,
                "n_jobs": jobs,
                "nnz": results[0]["nnz"],
                "median_time_s": float(np.median([r["time_s"] for r in results])),
                "median_peak_memory_MB": float(
                    np.median([r["peak_memory_bytes"] for r in results])
                )
                / (1024 * 1024),
                "cache_hit_s": _cache_hit_time(tree),
            }
            rows.append(row)
            print(
                f"  [{done:2d}/{len(shapes)}] {shape:11s} T={row['n_tips']:6,d} "
                f"n_jobs={jobs:2d} nnz={row['nnz']:10,d} "
                f"time={row['median_time_s']:.4f}s "
                f"mem={row['median_peak_memory_MB']:.2f}MB "
                f"hit={row['cache_hit_s'] * 1e3:.3f}ms"
            )
    return pd.DataFrame(rows)


# ------------------------------------------------------------------ #
# Main
# ------------------------------------------------------------------ #


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--quick", action="store_true", help="reduced grid")
    parser.add_argument("--n-jobs", type=int, default=2, help="parallel worker count")
    args = parser.parse_args()

    depths = BALANCED_DEPTHS_QUICK if args.quick else BALANCED_DEPTHS_FULL
    tips = CATERPILLAR_TIPS_QUICK if args.quick else CATERPILLAR_TIPS_FULL
    shapes = [("balanced", d) for d in depths] + [("caterpillar", t) for t in tips]

    print(f"Python {platform.python_version()} on {platform.machine()}")
    print(f"Profiling {len(shapes)} trees, n_jobs in {{1, {args.n_jobs}}}\n")
    df = run_grid(shapes, args.n_jobs)

    RESULTS_DIR.mkdir(parents=True, exist_ok=True)
    out = RESULTS_DIR / "zmatrix_profile.csv"
    df.to_csv(out, index=False)
    print(f"\nResults written to {out}")


if __name__ == "__main__":
    main()
