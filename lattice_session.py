"""
Session state and commands for the just-intonation lattice.

LatticeSession wires the pieces together and is the only surface the
front-end talks to. Each piece of mutable state has exactly one owner:

  LatticeStore      nodes, edges, bounds
  ExpansionTracker  pan/zoom transform
  SelectionState    selected ids, octave overrides
  VoiceManager      sounding / releasing voices
  LatticeSession    base frequency

Commands mutate their owner, then push the consequences downstream
(retune nodes, reconcile voices, record telemetry). Reads go through
node_state() / selection_summary().
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, ClassVar, Iterable

from lattice_audio import DEFAULT_WAVEFORM, ToneEngine
from lattice_model import (
    DEFAULT_BASE,
    DEFAULT_CONFIG,
    OCTAVE_MAX,
    OCTAVE_MIN,
    Bounds,
    LatticeConfig,
    LatticeNode,
    LatticeStore,
    format_ratio_label,
    format_tooltip,
    node_id,
)
from lattice_view import DELTA_PIXEL, ExpansionTracker, ViewTransform
from lattice_voices import DEFAULT_ENVELOPE, EnvelopeConfig, VoiceManager

logger = logging.getLogger(__name__)

ORIGIN_ID: str = node_id(0, 0)


def clamp(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, value))


# ═══════════════════════════════════════════════════════════════════════
#  Selection & octave overrides
# ═══════════════════════════════════════════════════════════════════════

class SelectionState:
    """The armed node ids plus per-node octave overrides."""

    def __init__(self) -> None:
        # dict keeps insertion order for the readout
        self._ids: dict[str, None] = {}

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(self._ids)

    def __contains__(self, nid: object) -> bool:
        return nid in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self):
        return iter(tuple(self._ids))

    def toggle(self, nid: str, exclusive: bool = False) -> None:
        """Exclusive: select only nid. Otherwise flip nid's membership."""
        if exclusive:
            self._ids = {nid: None}
        elif nid in self._ids:
            del self._ids[nid]
        else:
            self._ids[nid] = None

    def add(self, nid: str) -> None:
        self._ids[nid] = None

    def clear(self) -> None:
        self._ids.clear()

    @staticmethod
    def set_octave_override(node: LatticeNode, value: int) -> bool:
        """Clamp and store an override. False when nothing changed."""
        clamped = clamp(int(value), OCTAVE_MIN, OCTAVE_MAX)
        if clamped == node.octave_offset:
            return False
        node.octave_offset = clamped
        return True

    @classmethod
    def adjust_octave_override(cls, node: LatticeNode, delta: int) -> bool:
        return cls.set_octave_override(node, node.octave_offset + delta)


# ═══════════════════════════════════════════════════════════════════════
#  Session telemetry
# ═══════════════════════════════════════════════════════════════════════

class SessionLogger:
    """Writes session events to CSV for post-hoc review."""

    HEADER: ClassVar[str] = (
        "time_s,event,node,selected,sounding,nodes,"
        "fifth_min,fifth_max,third_min,third_max,base_hz\n"
    )

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()

    @property
    def enabled(self) -> bool:
        return self._fh is not None

    def open(self) -> None:
        try:
            self._fh = open(self._path, "w")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError:
            logger.warning("cannot write session stats to %s", self._path, exc_info=True)
            self._fh = None

    def log(
        self,
        event: str,
        node: str,
        selected: int,
        sounding: int,
        nodes: int,
        bounds: Bounds,
        base_hz: float,
    ) -> None:
        if self._fh is None:
            return
        t = time.monotonic() - self._t0
        try:
            self._fh.write(
                f"{t:.2f},{event},{node},{selected},{sounding},{nodes},"
                f"{bounds.fifth_min},{bounds.fifth_max},"
                f"{bounds.third_min},{bounds.third_max},{base_hz:.4f}\n"
            )
            self._fh.flush()
        except OSError:
            logger.warning("session stats write failed; disabling", exc_info=True)
            self.close()

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


# ═══════════════════════════════════════════════════════════════════════
#  Read model for the renderer
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NodeState:
    """What the renderer needs to draw one node."""
    id: str
    fifth_steps: int
    third_steps: int
    note_name: str
    ratio_label: str
    frequency: float
    position: tuple[float, float]
    selected: bool
    sounding: bool
    is_origin: bool


# ═══════════════════════════════════════════════════════════════════════
#  The session
# ═══════════════════════════════════════════════════════════════════════

class LatticeSession:
    """
    One interactive lattice session: nodes, view, selection, voices.

    Construct with an offline ToneEngine(realtime=False) for headless use.
    """

    def __init__(
        self,
        engine: ToneEngine | None = None,
        config: LatticeConfig = DEFAULT_CONFIG,
        envelope: EnvelopeConfig = DEFAULT_ENVELOPE,
        base_frequency: float = DEFAULT_BASE,
        waveform: str = DEFAULT_WAVEFORM,
        view_size: tuple[float, float] | None = None,
        stats: SessionLogger | None = None,
    ) -> None:
        self._base_frequency: float = base_frequency
        self.store: LatticeStore = LatticeStore(config, base_frequency)
        self.store.build_initial()
        if view_size is None:
            self.tracker: ExpansionTracker = ExpansionTracker(self.store)
        else:
            self.tracker = ExpansionTracker(self.store, *view_size)
        self.tracker.stabilize()
        self.selection: SelectionState = SelectionState()
        self.engine: ToneEngine = engine if engine is not None else ToneEngine()
        self.voices: VoiceManager = VoiceManager(
            self.engine, self.store.get, envelope, waveform,
        )
        self._stats: SessionLogger | None = stats

    # ── Public properties ──────────────────────────────────────────────

    @property
    def base_frequency(self) -> float:
        return self._base_frequency

    @property
    def playing(self) -> bool:
        return self.voices.playing

    @property
    def waveform(self) -> str:
        return self.voices.waveform

    @property
    def bounds(self) -> Bounds:
        return self.store.bounds

    @property
    def transform(self) -> ViewTransform:
        return self.tracker.transform

    def node(self, nid: str) -> LatticeNode | None:
        return self.store.get(nid)

    # ── Selection commands ─────────────────────────────────────────────

    def toggle_node(self, nid: str, exclusive: bool = False) -> bool:
        """Primary click toggles; modifier-click solos. False if unknown id."""
        if self.store.get(nid) is None:
            return False
        self.selection.toggle(nid, exclusive)
        self._after_selection_change()
        self._record("solo" if exclusive else "select", nid)
        return True

    def clear_selection(self) -> None:
        if not len(self.selection) and not self.voices.sounding_ids:
            return
        self.selection.clear()
        self._after_selection_change()
        self._record("clear")

    def _after_selection_change(self) -> None:
        if self.voices.playing:
            self.voices.sync_with_selection(self.selection)

    # ── Playback ───────────────────────────────────────────────────────

    def play(self) -> None:
        if self.voices.playing:
            return
        if not len(self.selection):
            self.selection.add(ORIGIN_ID)
        self.voices.play(self.selection)
        self._record("play")

    def pause(self) -> None:
        if not self.voices.playing and not self.voices.sounding_ids:
            return
        self.voices.pause()
        self._record("pause")

    def toggle_playback(self) -> None:
        if self.voices.playing:
            self.pause()
        else:
            self.play()

    def set_waveform(self, name: str) -> bool:
        changed = self.voices.set_waveform(name)
        if changed:
            self._record("waveform", name)
        return changed

    # ── Base frequency ─────────────────────────────────────────────────

    def set_base_frequency(self, value: float | str) -> bool:
        """Accept a positive finite number; anything else is rejected."""
        try:
            hz = float(value)
        except (TypeError, ValueError):
            logger.debug("rejected base frequency %r", value)
            return False
        if not math.isfinite(hz) or hz <= 0:
            logger.debug("rejected base frequency %r", value)
            return False
        if hz == self._base_frequency:
            return True
        self._base_frequency = hz
        self.store.retune_all(hz)
        if self.voices.playing:
            self.voices.retune_all()
        self._record("base")
        return True

    def reset_base_frequency(self) -> None:
        self.set_base_frequency(DEFAULT_BASE)

    # ── Octave overrides ───────────────────────────────────────────────

    def set_octave_override(self, nid: str, value: int) -> bool:
        node = self.store.get(nid)
        if node is None:
            return False
        return self._apply_override(node, SelectionState.set_octave_override(node, value))

    def adjust_octave_override(self, nid: str, delta: int) -> bool:
        node = self.store.get(nid)
        if node is None:
            return False
        return self._apply_override(node, SelectionState.adjust_octave_override(node, delta))

    def _apply_override(self, node: LatticeNode, changed: bool) -> bool:
        # No-op writes must not retune anything
        if not changed:
            return False
        node.retune(self._base_frequency)
        if self.voices.playing:
            self.voices.retune(node.id)
        self._record("octave", node.id)
        return True

    # ── View ───────────────────────────────────────────────────────────

    def pan(self, dx: float, dy: float) -> None:
        self.tracker.pan(dx, dy)

    def wheel(self, dx: float, dy: float, mode: int = DELTA_PIXEL) -> None:
        self.tracker.wheel(dx, dy, mode)

    def zoom_in(self) -> None:
        self.tracker.zoom_in()

    def zoom_out(self) -> None:
        self.tracker.zoom_out()

    def resize(self, width: float, height: float) -> None:
        self.tracker.resize(width, height)

    def home(self) -> None:
        self.tracker.center_on(0.0, 0.0)

    def frame(self) -> int:
        """Once per rendered frame: coalesced expansion + audio events."""
        created = self.tracker.on_frame()
        if created:
            self._record("expand")
        self.engine.poll()
        return created

    def close(self) -> None:
        self.voices.pause()
        self.engine.close()
        self.engine.poll()
        if self._stats is not None:
            self._stats.close()

    # ── Read model ─────────────────────────────────────────────────────

    def node_state(self, node: LatticeNode) -> NodeState:
        return NodeState(
            id=node.id,
            fifth_steps=node.fifth_steps,
            third_steps=node.third_steps,
            note_name=node.note_name,
            ratio_label=format_ratio_label(node),
            frequency=node.frequency,
            position=node.position,
            selected=node.id in self.selection,
            sounding=self.voices.is_sounding(node.id),
            is_origin=node.is_origin,
        )

    def node_states(self) -> Iterable[NodeState]:
        for node in self.store.nodes():
            yield self.node_state(node)

    def selected_nodes(self) -> list[LatticeNode]:
        nodes = (self.store.get(nid) for nid in self.selection)
        return [n for n in nodes if n is not None]

    def selection_summary(self) -> list[str]:
        """One readout line per selected node, in selection order."""
        return [
            f"{n.note_name} · {format_ratio_label(n)} · {n.frequency:.2f} Hz"
            for n in self.selected_nodes()
        ]

    def node_tooltip(self, nid: str) -> str:
        """Hover text for a node: note, ratio, octave, frequency."""
        node = self.store.get(nid)
        return format_tooltip(node) if node is not None else ""

    def status_line(self) -> str:
        state = "playing" if self.voices.playing else "stopped"
        b = self.store.bounds
        return (
            f"{state}  base {self._base_frequency:.2f} Hz  {self.voices.waveform}"
            f"  sel {len(self.selection)}  voices {len(self.voices.sounding_ids)}"
            f"  nodes {self.store.node_count:,}"
            f"  [{b.fifth_min}..{b.fifth_max}]x[{b.third_min}..{b.third_max}]"
        )

    # ── Telemetry ──────────────────────────────────────────────────────

    def _record(self, event: str, nid: str = "") -> None:
        logger.debug("%s %s", event, nid)
        if self._stats is None:
            return
        self._stats.log(
            event=event,
            node=nid,
            selected=len(self.selection),
            sounding=len(self.voices.sounding_ids),
            nodes=self.store.node_count,
            bounds=self.store.bounds,
            base_hz=self._base_frequency,
        )
