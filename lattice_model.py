"""
Lattice node model and the sparse lattice store.

A node is identified by its (fifth_steps, third_steps) coordinate and
carries everything derived from it: the exact stacked ratio, its octave
reduction, a note name, and a fixed layout position. The store is the
single authority for node identity; everything that needs a node goes
through LatticeStore.ensure_node().

Layout: fifths step horizontally, thirds step up and half a column to the
right, which produces the triangular lattice familiar from Euler's
Tonnetz.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator

from lattice_ratio import Ratio, multiply, normalize_to_octave, power

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

DEFAULT_BASE: float = 261.63  # C4 relative to A4 = 440 Hz
BASE_OCTAVE: int = 4
NOTE_NAMES: tuple[str, ...] = (
    "C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B",
)

# Generators
FIFTH: Ratio = Ratio(3, 2)
THIRD: Ratio = Ratio(5, 4)
FIFTH_SEMITONES: int = 7
THIRD_SEMITONES: int = 4

# User octave override range
OCTAVE_MIN: int = -6
OCTAVE_MAX: int = 6


@dataclass(frozen=True)
class LatticeConfig:
    """Layout and growth parameters for the lattice."""
    spacing_x: float = 120.0
    spacing_y: float = 110.0
    initial_fifth_range: int = 10
    initial_third_range: int = 8
    expand_step: int = 4
    expand_margin: float = 1.2
    # Hard cap on |fifth_steps| and |third_steps|; None = unbounded
    max_extent: int | None = 48


DEFAULT_CONFIG: LatticeConfig = LatticeConfig()


# ═══════════════════════════════════════════════════════════════════════
#  Node model
# ═══════════════════════════════════════════════════════════════════════

def node_id(fifth_steps: int, third_steps: int) -> str:
    return f"{fifth_steps}_{third_steps}"


def parse_node_id(nid: str) -> tuple[int, int]:
    """Inverse of node_id(). Raises ValueError for malformed ids."""
    fifth, sep, third = nid.rpartition("_")
    if not sep or not fifth:
        raise ValueError(f"malformed node id {nid!r}")
    return int(fifth), int(third)


def compute_note_name(semitone_offset: int) -> str:
    """Pitch class from the semitone offset, octave counted from C4."""
    index = semitone_offset % 12
    octave = BASE_OCTAVE + semitone_offset // 12
    return f"{NOTE_NAMES[index]}{octave}"


def compute_node_position(
    fifth_steps: int, third_steps: int, config: LatticeConfig = DEFAULT_CONFIG,
) -> tuple[float, float]:
    x = fifth_steps * config.spacing_x + third_steps * (config.spacing_x / 2)
    y = -third_steps * config.spacing_y
    return x, y


@dataclass(eq=False)
class LatticeNode:
    """One lattice point. Identity is (fifth_steps, third_steps)."""
    fifth_steps: int
    third_steps: int
    raw_ratio: Ratio
    normalized_ratio: Ratio
    octave_shift: int
    semitone_offset: int
    note_name: str
    position: tuple[float, float]
    frequency: float
    octave_offset: int = 0

    @property
    def id(self) -> str:
        return node_id(self.fifth_steps, self.third_steps)

    @property
    def coordinate(self) -> tuple[int, int]:
        return self.fifth_steps, self.third_steps

    @property
    def ratio_value(self) -> float:
        return self.normalized_ratio.value

    @property
    def ratio_string(self) -> str:
        return str(self.normalized_ratio)

    @property
    def is_origin(self) -> bool:
        return self.fifth_steps == 0 and self.third_steps == 0

    def retune(self, base_frequency: float) -> float:
        """Recompute frequency from the base and the octave override."""
        self.frequency = base_frequency * self.ratio_value * (2.0 ** self.octave_offset)
        return self.frequency


def create_node(
    fifth_steps: int,
    third_steps: int,
    base_frequency: float = DEFAULT_BASE,
    config: LatticeConfig = DEFAULT_CONFIG,
) -> LatticeNode:
    """Build a node from its coordinate. Pure: touches no shared state.

    Callers that need a stable identity must go through
    LatticeStore.ensure_node() instead.
    """
    raw = multiply(power(FIFTH, fifth_steps), power(THIRD, third_steps))
    normalized, octave_shift = normalize_to_octave(raw)
    semitone_offset = (
        fifth_steps * FIFTH_SEMITONES
        + third_steps * THIRD_SEMITONES
        - octave_shift * 12
    )
    node = LatticeNode(
        fifth_steps=fifth_steps,
        third_steps=third_steps,
        raw_ratio=raw,
        normalized_ratio=normalized,
        octave_shift=octave_shift,
        semitone_offset=semitone_offset,
        note_name=compute_note_name(semitone_offset),
        position=compute_node_position(fifth_steps, third_steps, config),
        frequency=0.0,
    )
    node.retune(base_frequency)
    return node


def format_ratio_label(node: LatticeNode) -> str:
    if not node.octave_offset:
        return node.ratio_string
    return f"{node.ratio_string} ×2^{node.octave_offset}"


def format_octave_offset(offset: int) -> str:
    if offset == 0:
        return "±0"
    return f"+{offset}" if offset > 0 else str(offset)


def format_tooltip(node: LatticeNode) -> str:
    return (
        f"note: {node.note_name}\n"
        f"ratio: {format_ratio_label(node)}\n"
        f"octave: {format_octave_offset(node.octave_offset)}\n"
        f"frequency: {node.frequency:.2f} Hz"
    )


# ═══════════════════════════════════════════════════════════════════════
#  Lattice store
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Bounds:
    """Materialized rectangle in coordinate space (inclusive)."""
    fifth_min: int = 0
    fifth_max: int = 0
    third_min: int = 0
    third_max: int = 0

    @property
    def fifth_span(self) -> int:
        return self.fifth_max - self.fifth_min + 1

    @property
    def third_span(self) -> int:
        return self.third_max - self.third_min + 1

    def contains(self, fifth_steps: int, third_steps: int) -> bool:
        return (
            self.fifth_min <= fifth_steps <= self.fifth_max
            and self.third_min <= third_steps <= self.third_max
        )


EdgeKey = tuple[str, str]


def edge_key(a: LatticeNode, b: LatticeNode) -> EdgeKey:
    """Unordered pair of node ids; the same key from either direction."""
    first, second = sorted((a.id, b.id))
    return first, second


class LatticeStore:
    """
    Sparse coordinate -> node map with an implicit grid graph.

    Nodes are created on demand and never removed. Each new node links to
    its west and south neighbours only, so every grid edge is recorded
    exactly once regardless of materialization order.
    """

    def __init__(
        self,
        config: LatticeConfig = DEFAULT_CONFIG,
        base_frequency: float = DEFAULT_BASE,
    ) -> None:
        self.config: LatticeConfig = config
        self._base_frequency: float = base_frequency
        self._nodes: dict[tuple[int, int], LatticeNode] = {}
        self._edges: dict[EdgeKey, tuple[LatticeNode, LatticeNode]] = {}
        self._bounds: Bounds = Bounds()
        self._built: bool = False

    # ── Read access ────────────────────────────────────────────────

    @property
    def bounds(self) -> Bounds:
        return self._bounds

    @property
    def base_frequency(self) -> float:
        return self._base_frequency

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, coordinate: object) -> bool:
        return coordinate in self._nodes

    def get(self, nid: str) -> LatticeNode | None:
        """Look a node up by id. None for unknown or malformed ids."""
        try:
            key = parse_node_id(nid)
        except ValueError:
            return None
        node = self._nodes.get(key)
        # "01_0" parses to (1, 0) but is not that node's id
        if node is None or node.id != nid:
            return None
        return node

    def get_at(self, fifth_steps: int, third_steps: int) -> LatticeNode | None:
        return self._nodes.get((fifth_steps, third_steps))

    def nodes(self) -> Iterator[LatticeNode]:
        return iter(self._nodes.values())

    def edges(self) -> Iterator[tuple[LatticeNode, LatticeNode]]:
        return iter(self._edges.values())

    # ── Materialization ────────────────────────────────────────────

    def ensure_node(self, fifth_steps: int, third_steps: int) -> LatticeNode:
        """Return the node at a coordinate, creating and linking it if new."""
        key = (fifth_steps, third_steps)
        node = self._nodes.get(key)
        if node is not None:
            return node

        node = create_node(fifth_steps, third_steps, self._base_frequency, self.config)
        self._nodes[key] = node
        self._connect_neighbors(node)
        return node

    def _connect_neighbors(self, node: LatticeNode) -> None:
        for dx, dy in ((-1, 0), (0, -1)):
            neighbor = self._nodes.get((node.fifth_steps + dx, node.third_steps + dy))
            if neighbor is None:
                continue
            key = edge_key(node, neighbor)
            if key not in self._edges:
                self._edges[key] = (neighbor, node)

    def build_initial(self) -> int:
        """Materialize the initial rectangle. Returns nodes created."""
        if self._built:
            return 0
        fr = self._clamp_extent(self.config.initial_fifth_range)
        tr = self._clamp_extent(self.config.initial_third_range)
        before = len(self._nodes)
        for third in range(-tr, tr + 1):
            for fifth in range(-fr, fr + 1):
                self.ensure_node(fifth, third)
        self._bounds = Bounds(-fr, fr, -tr, tr)
        self._built = True
        return len(self._nodes) - before

    def _clamp_extent(self, value: int) -> int:
        cap = self.config.max_extent
        if cap is None:
            return value
        return max(-cap, min(cap, value))

    def extend_fifths(self, delta: int) -> int:
        """Grow by |delta| columns on the side given by delta's sign."""
        b = self._bounds
        before = len(self._nodes)
        if delta < 0:
            new_min = self._clamp_extent(b.fifth_min + delta)
            for fifth in range(new_min, b.fifth_min):
                for third in range(b.third_min, b.third_max + 1):
                    self.ensure_node(fifth, third)
            self._bounds = Bounds(min(new_min, b.fifth_min), b.fifth_max,
                                  b.third_min, b.third_max)
        elif delta > 0:
            new_max = self._clamp_extent(b.fifth_max + delta)
            for fifth in range(b.fifth_max + 1, new_max + 1):
                for third in range(b.third_min, b.third_max + 1):
                    self.ensure_node(fifth, third)
            self._bounds = Bounds(b.fifth_min, max(new_max, b.fifth_max),
                                  b.third_min, b.third_max)
        created = len(self._nodes) - before
        if created:
            logger.debug("extend fifths %+d: %d nodes, bounds %s", delta, created, self._bounds)
        return created

    def extend_thirds(self, delta: int) -> int:
        """Grow by |delta| rows on the side given by delta's sign."""
        b = self._bounds
        before = len(self._nodes)
        if delta < 0:
            new_min = self._clamp_extent(b.third_min + delta)
            for third in range(new_min, b.third_min):
                for fifth in range(b.fifth_min, b.fifth_max + 1):
                    self.ensure_node(fifth, third)
            self._bounds = Bounds(b.fifth_min, b.fifth_max,
                                  min(new_min, b.third_min), b.third_max)
        elif delta > 0:
            new_max = self._clamp_extent(b.third_max + delta)
            for third in range(b.third_max + 1, new_max + 1):
                for fifth in range(b.fifth_min, b.fifth_max + 1):
                    self.ensure_node(fifth, third)
            self._bounds = Bounds(b.fifth_min, b.fifth_max,
                                  b.third_min, max(new_max, b.third_max))
        created = len(self._nodes) - before
        if created:
            logger.debug("extend thirds %+d: %d nodes, bounds %s", delta, created, self._bounds)
        return created

    # ── Frequency ──────────────────────────────────────────────────

    def retune_all(self, base_frequency: float) -> None:
        """Adopt a new base frequency and recompute every node."""
        self._base_frequency = base_frequency
        for node in self._nodes.values():
            node.retune(base_frequency)
