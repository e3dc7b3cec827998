#!/usr/bin/env python3
"""
  ♮  L A T T I C E  ♮
  A just-intonation lattice you can pan forever and play.

  Fifths (3/2) run left to right, major thirds (5/4) climb up and to the
  right. Every node is an exact ratio against the base pitch, reduced into
  one octave and named by its nearest equal-tempered note. Select nodes to
  build a chord; press space to hear it. The lattice grows as you approach
  its edge.

  Controls:
    q         quit               SPACE     play / pause
    arrows    pan                wheel     pan
    click     toggle node        ctrl-click  select only that node
    dbl-click octave panel       (+ / - / 0 inside it, Esc closes)
    c         clear selection    w         cycle waveform
    b         edit base Hz       r         reset base Hz
    z/x       zoom out / in      h         home (origin)
    s         toggle selection panel
"""

from __future__ import annotations

import argparse
import curses
import logging
import time
from dataclasses import replace
from pathlib import Path

from lattice_audio import DEFAULT_WAVEFORM, WAVEFORMS, ToneEngine
from lattice_model import (
    DEFAULT_BASE,
    DEFAULT_CONFIG,
    OCTAVE_MAX,
    OCTAVE_MIN,
    format_octave_offset,
)
from lattice_session import LatticeSession, NodeState, SessionLogger
from lattice_view import DELTA_LINE, ZOOM_LABELS, ViewTransform

logger = logging.getLogger(__name__)

# ── Terminal geometry ───────────────────────────────────────────────────
# View units covered by one character cell (cells are roughly 1:2)
CELL_W: float = 10.0
CELL_H: float = 22.0

PAN_STEP_COLS: int = 8
PAN_STEP_ROWS: int = 3
WHEEL_LINES: int = 3

FRAME_DELAY: float = 1 / 30

KEY_ESC: int = 27

# Ctrl on a mouse event; not every curses build exports it
BUTTON_CTRL: int = getattr(curses, "BUTTON_CTRL", 0)
WHEEL_UP: int = getattr(curses, "BUTTON4_PRESSED", 0)
WHEEL_DOWN: int = getattr(curses, "BUTTON5_PRESSED", 0)

# ── Color pairs ─────────────────────────────────────────────────────────
PAIR_EDGE = 1
PAIR_NODE = 2
PAIR_SELECTED = 3
PAIR_SOUNDING = 4
PAIR_ORIGIN = 5
PAIR_PANEL = 6


def setup_colors() -> None:
    curses.start_color()
    curses.use_default_colors()
    many = curses.COLORS >= 256
    curses.init_pair(PAIR_EDGE, 60 if many else curses.COLOR_BLUE, -1)
    curses.init_pair(PAIR_NODE, 252 if many else curses.COLOR_WHITE, -1)
    curses.init_pair(PAIR_SELECTED, 141 if many else curses.COLOR_MAGENTA, -1)
    curses.init_pair(PAIR_SOUNDING, 214 if many else curses.COLOR_YELLOW, -1)
    curses.init_pair(PAIR_ORIGIN, 117 if many else curses.COLOR_CYAN, -1)
    curses.init_pair(PAIR_PANEL, 230 if many else curses.COLOR_WHITE, -1)


# ═══════════════════════════════════════════════════════════════════════
#  Drawing
# ═══════════════════════════════════════════════════════════════════════

def to_cell(transform: ViewTransform, x: float, y: float) -> tuple[int, int]:
    """Layout position -> (row, col) of the terminal."""
    sx, sy = transform.to_screen(x, y)
    return int(round(sy / CELL_H)), int(round(sx / CELL_W))


def _put(stdscr: curses.window, row: int, col: int, text: str, attr: int,
         max_y: int, max_x: int) -> bool:
    if row < 0 or row >= max_y - 1 or col >= max_x or col + len(text) <= 0:
        return False
    if col < 0:
        text = text[-col:]
        col = 0
    text = text[: max_x - col]
    try:
        stdscr.addstr(row, col, text, attr)
    except curses.error:
        pass
    return True


def _draw_edge(stdscr: curses.window, a: tuple[int, int], b: tuple[int, int],
               max_y: int, max_x: int) -> None:
    (r0, c0), (r1, c1) = a, b
    attr = curses.color_pair(PAIR_EDGE) | curses.A_DIM
    if r0 == r1:
        lo, hi = sorted((c0, c1))
        _put(stdscr, r0, lo + 1, "─" * max(0, hi - lo - 1), attr, max_y, max_x)
        return
    # Third edges climb to the right
    steps = max(abs(r1 - r0), abs(c1 - c0))
    glyph = "/" if (r1 - r0) * (c1 - c0) < 0 else "\\"
    for i in range(1, steps):
        row = r0 + round((r1 - r0) * i / steps)
        col = c0 + round((c1 - c0) * i / steps)
        _put(stdscr, row, col, glyph, attr, max_y, max_x)


def _node_attr(state: NodeState) -> int:
    if state.sounding:
        return curses.color_pair(PAIR_SOUNDING) | curses.A_BOLD | curses.A_REVERSE
    if state.selected:
        return curses.color_pair(PAIR_SELECTED) | curses.A_BOLD | curses.A_REVERSE
    if state.is_origin:
        return curses.color_pair(PAIR_ORIGIN) | curses.A_BOLD
    return curses.color_pair(PAIR_NODE)


def _node_lines(state: NodeState, zoom_level: int) -> list[str]:
    if zoom_level >= 0:
        return [state.note_name, state.ratio_label]
    if zoom_level == -1:
        return [state.note_name]
    return ["●" if state.selected else "·"]


def render(
    stdscr: curses.window,
    session: LatticeSession,
    panel_node: str | None,
    show_selection: bool,
    audio_status: str,
) -> dict[tuple[int, int], str]:
    """Draw the lattice, overlays and status bar. Returns the click hitmap."""
    max_y, max_x = stdscr.getmaxyx()
    transform = session.transform
    hitmap: dict[tuple[int, int], str] = {}

    # ── Visible nodes ─────────────────────────────────────────────
    cells: dict[str, tuple[int, int]] = {}
    margin = 16
    for node in session.store.nodes():
        row, col = to_cell(transform, *node.position)
        if -margin <= row < max_y + margin and -margin <= col < max_x + margin:
            cells[node.id] = (row, col)

    # ── Edges under labels ───────────────────────────────────────
    for a, b in session.store.edges():
        ca, cb = cells.get(a.id), cells.get(b.id)
        if ca is not None and cb is not None:
            _draw_edge(stdscr, ca, cb, max_y, max_x)

    # ── Node labels ──────────────────────────────────────────────
    for nid, (row, col) in cells.items():
        node = session.node(nid)
        if node is None:
            continue
        state = session.node_state(node)
        attr = _node_attr(state)
        lines = _node_lines(state, transform.zoom_level)
        for i, text in enumerate(lines):
            r = row + i - (len(lines) - 1) // 2
            c = col - len(text) // 2
            if _put(stdscr, r, c, text, attr, max_y, max_x):
                for k in range(len(text)):
                    hitmap[(r, c + k)] = nid

    if show_selection:
        _draw_selection_panel(stdscr, session, max_y, max_x)
    if panel_node is not None:
        _draw_octave_panel(stdscr, session, panel_node, max_y, max_x)

    # ── Status bar ───────────────────────────────────────────────
    zoom_label = ZOOM_LABELS.get(transform.zoom_level, f"{2 ** transform.zoom_level}x")
    left = f"  {session.status_line()}  {zoom_label}"
    right = f" {audio_status}  q spc c b r w z/x h s  "
    status = left + " " * max(1, max_x - len(left) - len(right) - 1) + right
    try:
        stdscr.addstr(max_y - 1, 0, status[: max_x - 1], curses.A_DIM)
    except curses.error:
        pass
    return hitmap


def _draw_selection_panel(
    stdscr: curses.window, session: LatticeSession, max_y: int, max_x: int,
) -> None:
    """Selected nodes, top-left, in selection order."""
    lines = session.selection_summary() or ["nothing selected"]
    width = min(max(len(s) for s in lines) + 4, max_x - 2)
    lines = lines[: max(0, max_y - 4)]
    style = curses.color_pair(PAIR_PANEL) | curses.A_DIM
    _put(stdscr, 0, 1, f"{' selection ':─^{width}}", style, max_y, max_x)
    for i, line in enumerate(lines, start=1):
        _put(stdscr, i, 1, f"  {line:<{width - 2}}", style, max_y, max_x)


def _draw_octave_panel(
    stdscr: curses.window, session: LatticeSession, nid: str,
    max_y: int, max_x: int,
) -> None:
    """Per-node octave override controls, bottom-right."""
    node = session.node(nid)
    if node is None:
        return
    offset = node.octave_offset
    minus = "[-]" if offset > OCTAVE_MIN else " - "
    plus = "[+]" if offset < OCTAVE_MAX else " + "
    lines = [f" {line}" for line in session.node_tooltip(nid).splitlines()]
    lines += [
        f" {minus} {format_octave_offset(offset):>3} {plus}   [0] reset",
        " esc closes",
    ]
    panel_w = 32
    x0 = max_x - panel_w - 2
    y0 = max_y - len(lines) - 3
    if x0 < 0 or y0 < 0:
        return
    style = curses.color_pair(PAIR_PANEL) | curses.A_BOLD
    _put(stdscr, y0 - 1, x0, "─" * panel_w, style, max_y, max_x)
    for i, line in enumerate(lines):
        _put(stdscr, y0 + i, x0, f"{line:<{panel_w}}", style, max_y, max_x)


def prompt_base(stdscr: curses.window, current: float) -> str:
    """Blocking one-line prompt on the status row."""
    max_y, max_x = stdscr.getmaxyx()
    label = f" base Hz [{current:.2f}]: "
    stdscr.nodelay(False)
    curses.echo()
    curses.curs_set(1)
    try:
        stdscr.move(max_y - 1, 0)
        stdscr.clrtoeol()
        stdscr.addstr(max_y - 1, 0, label[: max_x - 1])
        raw = stdscr.getstr(max_y - 1, min(len(label), max_x - 1), 16)
    except curses.error:
        raw = b""
    finally:
        curses.noecho()
        curses.curs_set(0)
        stdscr.nodelay(True)
    return raw.decode("utf-8", errors="replace").strip()


# ═══════════════════════════════════════════════════════════════════════
#  Main loop
# ═══════════════════════════════════════════════════════════════════════

def main(stdscr: curses.window, args: argparse.Namespace) -> None:
    curses.curs_set(0)
    stdscr.nodelay(True)
    stdscr.timeout(0)
    curses.mousemask(curses.ALL_MOUSE_EVENTS | curses.REPORT_MOUSE_POSITION)
    setup_colors()

    max_y, max_x = stdscr.getmaxyx()
    view_size = (max_x * CELL_W, (max_y - 1) * CELL_H)

    max_extent = None if args.max_extent == 0 else args.max_extent
    config = replace(DEFAULT_CONFIG, max_extent=max_extent)

    stats: SessionLogger | None = None
    if args.stats is not None:
        stats = SessionLogger(args.stats)
        stats.open()

    engine = ToneEngine(realtime=not args.no_audio)
    if engine.realtime and not engine.start():
        logger.warning("continuing without audio output")

    session = LatticeSession(
        engine=engine,
        config=config,
        base_frequency=args.base,
        waveform=args.waveform,
        view_size=view_size,
        stats=stats,
    )

    panel_node: str | None = None
    show_selection = True
    hitmap: dict[tuple[int, int], str] = {}
    last_frame = time.monotonic()

    try:
        while True:
            # ── Input ──────────────────────────────────────────────
            try:
                key = stdscr.getch()
            except curses.error:
                key = -1

            if panel_node is not None and key in (ord("+"), ord("="), ord("-"),
                                                  ord("_"), ord("0"), KEY_ESC):
                if key in (ord("+"), ord("=")):
                    session.adjust_octave_override(panel_node, 1)
                elif key in (ord("-"), ord("_")):
                    session.adjust_octave_override(panel_node, -1)
                elif key == ord("0"):
                    session.set_octave_override(panel_node, 0)
                else:
                    panel_node = None
            elif key in (ord("q"), ord("Q")):
                break
            elif key == ord(" "):
                session.toggle_playback()
            elif key in (ord("c"), ord("C")):
                session.clear_selection()
            elif key in (ord("b"), ord("B")):
                text = prompt_base(stdscr, session.base_frequency)
                if text and not session.set_base_frequency(text):
                    curses.beep()
            elif key in (ord("r"), ord("R")):
                session.reset_base_frequency()
            elif key in (ord("w"), ord("W")):
                idx = WAVEFORMS.index(session.waveform)
                session.set_waveform(WAVEFORMS[(idx + 1) % len(WAVEFORMS)])
            elif key in (ord("z"), ord("Z")):
                session.zoom_out()
            elif key in (ord("x"), ord("X")):
                session.zoom_in()
            elif key in (ord("h"), ord("H")):
                session.home()
            elif key in (ord("s"), ord("S")):
                show_selection = not show_selection
            elif key == curses.KEY_UP:
                session.pan(0, PAN_STEP_ROWS * CELL_H)
            elif key == curses.KEY_DOWN:
                session.pan(0, -PAN_STEP_ROWS * CELL_H)
            elif key == curses.KEY_LEFT:
                session.pan(PAN_STEP_COLS * CELL_W, 0)
            elif key == curses.KEY_RIGHT:
                session.pan(-PAN_STEP_COLS * CELL_W, 0)
            elif key == curses.KEY_MOUSE:
                try:
                    _, mx, my, _, bstate = curses.getmouse()
                except curses.error:
                    bstate = 0
                    mx = my = -1
                nid = hitmap.get((my, mx))
                if bstate & WHEEL_UP:
                    session.wheel(0, -WHEEL_LINES, DELTA_LINE)
                elif bstate & WHEEL_DOWN:
                    session.wheel(0, WHEEL_LINES, DELTA_LINE)
                elif bstate & curses.BUTTON1_DOUBLE_CLICKED:
                    if nid is not None:
                        panel_node = nid
                elif bstate & (curses.BUTTON1_CLICKED | curses.BUTTON1_PRESSED):
                    if nid is None:
                        session.clear_selection()
                    else:
                        session.toggle_node(nid, exclusive=bool(bstate & BUTTON_CTRL))
            elif key == curses.KEY_RESIZE:
                max_y, max_x = stdscr.getmaxyx()
                session.resize(max_x * CELL_W, (max_y - 1) * CELL_H)

            # ── Frame ──────────────────────────────────────────────
            now = time.monotonic()
            if not engine.realtime:
                # Silent clock so released voices still finish
                engine.render(int((now - last_frame) * engine.sample_rate))
            last_frame = now
            session.frame()

            # ── Render ─────────────────────────────────────────────
            stdscr.erase()
            hitmap = render(stdscr, session, panel_node, show_selection,
                            engine.status_string())
            stdscr.refresh()

            time.sleep(FRAME_DELAY)

    finally:
        session.close()


def cli(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Interactive just-intonation lattice in the terminal",
    )
    parser.add_argument(
        "--base", type=float, default=DEFAULT_BASE,
        help=f"Base frequency in Hz for the 1/1 node (default: {DEFAULT_BASE})",
    )
    parser.add_argument(
        "--waveform", choices=WAVEFORMS, default=DEFAULT_WAVEFORM,
        help=f"Oscillator waveform (default: {DEFAULT_WAVEFORM})",
    )
    parser.add_argument(
        "--max-extent", type=int, default=DEFAULT_CONFIG.max_extent,
        help="Largest |fifth| or |third| step the lattice grows to; 0 = unbounded",
    )
    parser.add_argument(
        "--no-audio", action="store_true",
        help="Never open an audio device",
    )
    parser.add_argument(
        "--stats", type=Path, default=None,
        help="Write session events to this CSV file",
    )
    parser.add_argument(
        "--log", type=Path, default=Path("lattice.log"),
        help="Diagnostic log file (default: lattice.log)",
    )
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Diagnostic log level (default: WARNING)",
    )
    args = parser.parse_args(argv)

    if args.base <= 0:
        parser.error("--base must be positive")

    # curses owns the terminal; log to a file
    logging.basicConfig(
        filename=args.log,
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        curses.wrapper(main, args)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
