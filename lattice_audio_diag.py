#!/usr/bin/env python3
"""Offline diagnostic renderer for the lattice voice engine.

Drives a scripted session (chord, toggles, octave override, base change,
pause) through an offline ToneEngine, then reports per-stage level and
discontinuity figures. A sample-to-sample jump far above the stage's
typical slope is what a click looks like; voice starts, releases and
retunes should never produce one.

Usage:
    python3 lattice_audio_diag.py                       # all waveforms
    python3 lattice_audio_diag.py --waveforms sine      # one waveform
    python3 lattice_audio_diag.py --no-wav              # report only
    python3 lattice_audio_diag.py --hold 0.5            # shorter stages
"""
from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import numpy as np
from numpy.typing import NDArray
from scipy.io import wavfile

from lattice_audio import BUFFER_SIZE, SAMPLE_RATE, WAVEFORMS, ToneEngine
from lattice_session import LatticeSession


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

DEFAULT_HOLD: float = 1.0
DEFAULT_OUTPUT_DIR: str = "diag_output"

# Release ramp plus stop padding, with room to spare
TAIL_SECONDS: float = 0.6

# max jump / p99 jump above this is reported as a click
CLICK_RATIO: float = 3.0


# ═══════════════════════════════════════════════════════════════════════
#  Scenario
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Stage:
    """One scripted step: an action, then hold for `seconds`."""
    name: str
    description: str
    action: Callable[[LatticeSession], object]
    seconds: float | None = None  # None = use the run's hold time


def _chord(session: LatticeSession) -> None:
    for nid in ("0_0", "1_0", "0_1"):
        session.toggle_node(nid)
    session.play()


STAGES: tuple[Stage, ...] = (
    Stage("chord", "C major triad 1/1, 3/2, 5/4 starts", _chord),
    Stage("add", "add F (2/3 -> 4/3) while sounding", lambda s: s.toggle_node("-1_0")),
    Stage("remove", "release G while the rest sustain", lambda s: s.toggle_node("1_0")),
    Stage("octave", "E drops an octave in place", lambda s: s.adjust_octave_override("0_1", -1)),
    Stage("base", "base moves to 220 Hz, every voice retunes", lambda s: s.set_base_frequency(220.0)),
    Stage("solo", "solo the origin", lambda s: s.toggle_node("0_0", exclusive=True)),
    Stage("pause", "pause: all voices release", lambda s: s.pause(), TAIL_SECONDS),
)


# ═══════════════════════════════════════════════════════════════════════
#  Rendering
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class StageRender:
    name: str
    description: str
    audio: NDArray[np.float32]
    sounding: int
    releasing: int


def render_scenario(waveform: str, hold: float) -> tuple[list[StageRender], LatticeSession]:
    """Play every stage through an offline engine, one buffer at a time."""
    engine = ToneEngine(realtime=False)
    session = LatticeSession(engine=engine, waveform=waveform)

    renders: list[StageRender] = []
    for stage in STAGES:
        stage.action(session)
        seconds = stage.seconds if stage.seconds is not None else hold
        n_total = int(seconds * SAMPLE_RATE)
        chunks: list[NDArray[np.float32]] = []
        done = 0
        while done < n_total:
            n = min(BUFFER_SIZE, n_total - done)
            chunks.append(engine.render(n))
            session.frame()
            done += n
        audio = np.concatenate(chunks) if chunks else np.zeros(0, dtype=np.float32)
        renders.append(StageRender(
            name=stage.name,
            description=stage.description,
            audio=audio,
            sounding=len(session.voices.sounding_ids),
            releasing=session.voices.releasing_count,
        ))
    return renders, session


# ═══════════════════════════════════════════════════════════════════════
#  Analysis
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class StageMetrics:
    name: str
    description: str
    rms_db: float
    peak: float
    max_jump: float
    p99_jump: float
    sounding: int
    releasing: int

    @property
    def click_suspect(self) -> bool:
        return self.p99_jump > 1e-6 and self.max_jump / self.p99_jump > CLICK_RATIO


def _rms(signal: NDArray[np.float32]) -> float:
    """Root mean square of the signal."""
    if len(signal) == 0:
        return 0.0
    return float(np.sqrt(np.mean(signal.astype(np.float64) ** 2)))


def analyze(render: StageRender, previous_tail: float) -> StageMetrics:
    audio = render.audio.astype(np.float64)
    rms = _rms(render.audio)
    rms_db = 20.0 * np.log10(rms) if rms > 1e-10 else -120.0
    # Include the boundary with the previous stage; that is where clicks hide
    jumps = np.abs(np.diff(np.concatenate(([previous_tail], audio))))
    return StageMetrics(
        name=render.name,
        description=render.description,
        rms_db=float(rms_db),
        peak=float(np.max(np.abs(audio))) if len(audio) else 0.0,
        max_jump=float(jumps.max()) if len(jumps) else 0.0,
        p99_jump=float(np.percentile(jumps, 99)) if len(jumps) else 0.0,
        sounding=render.sounding,
        releasing=render.releasing,
    )


def format_report(results: dict[str, list[StageMetrics]], hold: float) -> str:
    """Format analysis results into a structured text report."""
    lines: list[str] = []
    sep = "=" * 79

    lines.append(sep)
    lines.append("LATTICE AUDIO DIAGNOSTIC REPORT")
    lines.append(f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}")
    lines.append(f"Hold per stage: {hold}s @ {SAMPLE_RATE} Hz")
    lines.append(sep)
    lines.append("")

    for waveform, metrics in results.items():
        lines.append(f"WAVEFORM: {waveform}")
        lines.append("  Stage     RMS (dB)   Peak   MaxJump  P99Jump  Voices  Rel")
        lines.append("  " + "-" * 60)
        for m in metrics:
            flag = " [!]" if m.click_suspect else ""
            lines.append(
                f"  {m.name:<8s}  {m.rms_db:7.1f}  {m.peak:6.3f}  {m.max_jump:7.4f}"
                f"  {m.p99_jump:7.4f}  {m.sounding:6d}  {m.releasing:3d}{flag}"
            )
        lines.append("")
        for m in metrics:
            lines.append(f"    {m.name:<8s} {m.description}")
        leftover = metrics[-1].sounding + metrics[-1].releasing if metrics else 0
        if leftover:
            lines.append(f"  [!] {leftover} voice(s) still alive after the pause tail")
        lines.append("")

    lines.append(sep)
    return "\n".join(lines)


def write_wav(output_dir: Path, waveform: str, audio: NDArray[np.float32]) -> Path | None:
    """Write the whole scenario as one WAV. Returns the path written."""
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"lattice_{waveform}.wav"
    try:
        wavfile.write(str(path), SAMPLE_RATE, audio.astype(np.float32))
    except OSError as e:
        print(f"  [error] Failed to write {path}: {e}", file=sys.stderr)
        return None
    return path


# ═══════════════════════════════════════════════════════════════════════
#  Main
# ═══════════════════════════════════════════════════════════════════════

def main() -> None:
    """Run the full diagnostic pipeline."""
    parser = argparse.ArgumentParser(
        description="Lattice voice engine diagnostic renderer and analyzer",
    )
    parser.add_argument(
        "--waveforms", nargs="*", default=None,
        help=f"Waveforms to run (default: all). Choices: {', '.join(WAVEFORMS)}",
    )
    parser.add_argument(
        "--hold", type=float, default=DEFAULT_HOLD,
        help=f"Seconds per stage (default: {DEFAULT_HOLD})",
    )
    parser.add_argument(
        "--output-dir", type=Path, default=Path(DEFAULT_OUTPUT_DIR),
        help=f"Directory for WAV output (default: {DEFAULT_OUTPUT_DIR})",
    )
    parser.add_argument(
        "--no-wav", action="store_true",
        help="Skip WAV output, only print report",
    )
    args = parser.parse_args()

    waveforms: list[str] = args.waveforms if args.waveforms else list(WAVEFORMS)
    for name in waveforms:
        if name not in WAVEFORMS:
            print(f"Error: unknown waveform '{name}'. Choose from: {', '.join(WAVEFORMS)}",
                  file=sys.stderr)
            sys.exit(1)

    results: dict[str, list[StageMetrics]] = {}
    for waveform in waveforms:
        print(f"  Rendering: {waveform}...", end="", flush=True)
        renders, session = render_scenario(waveform, args.hold)
        session.close()

        print(" analyzing...", end="", flush=True)
        metrics: list[StageMetrics] = []
        tail = 0.0
        for r in renders:
            metrics.append(analyze(r, tail))
            if len(r.audio):
                tail = float(r.audio[-1])
        results[waveform] = metrics

        if not args.no_wav:
            full = np.concatenate([r.audio for r in renders])
            path = write_wav(args.output_dir, waveform, full)
            print(f" wrote {path}." if path else " done.", flush=True)
        else:
            print(" done.", flush=True)

    print()
    report = format_report(results, args.hold)
    print(report)

    if not args.no_wav:
        report_path = args.output_dir / "analysis_report.txt"
        try:
            report_path.write_text(report)
            print(f"\nReport saved to: {report_path}")
        except OSError as e:
            print(f"\nFailed to save report: {e}", file=sys.stderr)


if __name__ == "__main__":
    main()
