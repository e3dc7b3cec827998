#!/usr/bin/env python3
"""
Pan-stress harness for the lattice.

Drags the view steadily in one direction, headlessly, and measures what
each frame costs: the coalesced expansion check plus the renderer's
visible-node scan. Shows how node count grows and where max_extent
stops it.

Usage:
  python3 lattice_bench.py                   # 600 frames, per-frame timing
  python3 lattice_bench.py --direction ne    # drag toward +fifths/+thirds
  python3 lattice_bench.py --max-extent 0    # no cap (unbounded growth)
  python3 lattice_bench.py --profile         # cProfile breakdown instead
  python3 lattice_bench.py --dump prof.out   # dump cProfile binary for snakeviz etc.
"""

from __future__ import annotations

import argparse
import cProfile
import pstats
import time
from dataclasses import replace
from io import StringIO

import numpy as np

from lattice import CELL_H, CELL_W, to_cell
from lattice_audio import ToneEngine
from lattice_model import DEFAULT_CONFIG
from lattice_session import LatticeSession

# Screen units per frame for each drag direction (content moves opposite)
DIRECTIONS: dict[str, tuple[float, float]] = {
    "e": (-40.0, 0.0),
    "w": (40.0, 0.0),
    "n": (0.0, 40.0),
    "s": (0.0, -40.0),
    "ne": (-30.0, 30.0),
    "sw": (30.0, -30.0),
}


def simulate_render_work(session: LatticeSession, rows: int, cols: int) -> dict[str, float]:
    """The renderer's per-frame work minus curses output."""
    timings: dict[str, float] = {}
    transform = session.transform

    t0 = time.perf_counter()
    cells: dict[str, tuple[int, int]] = {}
    for node in session.store.nodes():
        row, col = to_cell(transform, *node.position)
        if 0 <= row < rows and 0 <= col < cols:
            cells[node.id] = (row, col)
    timings["visible_scan"] = time.perf_counter() - t0

    t0 = time.perf_counter()
    for nid in cells:
        node = session.node(nid)
        if node is not None:
            session.node_state(node)
    timings["node_states"] = time.perf_counter() - t0

    t0 = time.perf_counter()
    drawn = sum(1 for a, b in session.store.edges() if a.id in cells and b.id in cells)
    timings["edge_filter"] = time.perf_counter() - t0

    timings["_visible"] = float(len(cells))
    timings["_edges"] = float(drawn)
    return timings


def run_benchmark(
    n_frames: int,
    direction: str = "e",
    term_rows: int = 50,
    term_cols: int = 180,
    max_extent: int | None = DEFAULT_CONFIG.max_extent,
    profile: bool = False,
    dump_path: str | None = None,
) -> None:
    """Run the benchmark for n_frames and report results."""
    config = replace(DEFAULT_CONFIG, max_extent=max_extent)
    session = LatticeSession(
        engine=ToneEngine(realtime=False),
        config=config,
        view_size=(term_cols * CELL_W, (term_rows - 1) * CELL_H),
    )
    dx, dy = DIRECTIONS[direction]

    print(f"Initial nodes: {session.store.node_count:,}  "
          f"edges: {session.store.edge_count:,}  "
          f"bounds: {session.bounds}")
    print(f"Terminal: {term_rows}x{term_cols}  Direction: {direction}  "
          f"Frames: {n_frames}  Cap: {max_extent if max_extent else 'none'}")
    print()

    # ── cProfile run ───────────────────────────────────────────────
    if profile or dump_path:
        def profiled_run() -> None:
            for _ in range(n_frames):
                session.pan(dx, dy)
                session.frame()
                simulate_render_work(session, term_rows - 1, term_cols)

        profiler = cProfile.Profile()
        wall_t0 = time.perf_counter()
        profiler.runctx("profiled_run()", globals(), locals())
        wall_dt = time.perf_counter() - wall_t0

        print(f"Wall time: {wall_dt:.2f}s  ({wall_dt / n_frames * 1000:.1f}ms/frame)")
        print(f"Final nodes: {session.store.node_count:,}")
        print()

        if dump_path:
            profiler.dump_stats(dump_path)
            print(f"Profile data saved to: {dump_path}")
            print(f"  View with: python3 -m pstats {dump_path}")
            print()

        buf = StringIO()
        ps = pstats.Stats(profiler, stream=buf)
        ps.sort_stats("cumulative")
        ps.print_stats(30)
        print(buf.getvalue())
        return

    # ── Per-frame component timing ─────────────────────────────────
    expand_times: list[float] = []
    render_times: dict[str, list[float]] = {}
    total_times: list[float] = []
    growth_frames = 0

    for frame in range(n_frames):
        frame_t0 = time.perf_counter()

        session.pan(dx, dy)
        t0 = time.perf_counter()
        created = session.frame()
        expand_times.append(time.perf_counter() - t0)
        if created:
            growth_frames += 1

        rt = simulate_render_work(session, term_rows - 1, term_cols)
        for k, v in rt.items():
            render_times.setdefault(k, []).append(v)

        total_times.append(time.perf_counter() - frame_t0)

        if (frame + 1) % 100 == 0:
            avg_ms = sum(total_times[-100:]) / 100 * 1000
            print(f"  frame {frame + 1}/{n_frames}  "
                  f"avg {avg_ms:.2f}ms/frame  "
                  f"nodes {session.store.node_count:,}")

    print()
    print("=== Per-Frame Component Breakdown (ms) ===")
    print(f"{'Component':<25} {'Mean':>8} {'P50':>8} {'P95':>8} {'P99':>8} {'Max':>8}")
    print("-" * 73)

    def stats_line(name: str, data: list[float]) -> str:
        arr = np.array(data) * 1000
        return (f"{name:<25} {arr.mean():8.3f} {np.median(arr):8.3f} "
                f"{np.percentile(arr, 95):8.3f} {np.percentile(arr, 99):8.3f} "
                f"{arr.max():8.3f}")

    print(stats_line("frame() / expansion", expand_times))
    for k in sorted(render_times):
        if k.startswith("_"):
            continue
        print(stats_line(k, render_times[k]))
    print(stats_line("TOTAL", total_times))

    visible = np.array(render_times.get("_visible", [0.0]))
    print(f"\nvisible nodes/frame: mean={visible.mean():.0f}  max={visible.max():.0f}")

    b = session.bounds
    print(f"\nFinal nodes: {session.store.node_count:,}  "
          f"edges: {session.store.edge_count:,}")
    print(f"Final bounds: fifths [{b.fifth_min}, {b.fifth_max}]  "
          f"thirds [{b.third_min}, {b.third_max}]")
    print(f"Frames that grew the lattice: {growth_frames}/{n_frames}")

    budget_ms = 1000.0 / 30.0
    total_arr = np.array(total_times) * 1000
    over_budget = (total_arr > budget_ms).sum()
    print(f"\n30fps budget: {budget_ms:.1f}ms/frame")
    print(f"Frames over budget: {over_budget}/{n_frames} "
          f"({100 * over_budget / n_frames:.1f}%)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Pan-stress the lattice")
    parser.add_argument("-n", "--frames", type=int, default=600,
                        help="Number of frames to simulate (default: 600)")
    parser.add_argument("--direction", choices=sorted(DIRECTIONS), default="e",
                        help="Drag direction (default: e)")
    parser.add_argument("--rows", type=int, default=50,
                        help="Simulated terminal rows (default: 50)")
    parser.add_argument("--cols", type=int, default=180,
                        help="Simulated terminal cols (default: 180)")
    parser.add_argument("--max-extent", type=int, default=DEFAULT_CONFIG.max_extent,
                        help="Lattice growth cap; 0 = unbounded")
    parser.add_argument("--profile", action="store_true",
                        help="cProfile breakdown instead of per-frame timing")
    parser.add_argument("--dump", type=str, default=None,
                        help="Dump cProfile binary to this path")
    args = parser.parse_args()

    run_benchmark(
        n_frames=args.frames,
        direction=args.direction,
        term_rows=args.rows,
        term_cols=args.cols,
        max_extent=None if args.max_extent == 0 else args.max_extent,
        profile=args.profile,
        dump_path=args.dump,
    )


if __name__ == "__main__":
    main()
