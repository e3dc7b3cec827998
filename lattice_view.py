"""
Viewport transform and lattice expansion tracking.

The view maps lattice layout positions to screen space as
``screen = position * 2**zoom_level + translate``. Inverting that map at
the four viewport corners tells us which lattice coordinates are on
screen; when they come within a margin of the materialized rectangle the
store is grown by a fixed step.

Expansion checks are coalesced: any number of pan/wheel/zoom changes
between two frames produce at most one check, run from on_frame().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from lattice_model import LatticeStore

logger = logging.getLogger(__name__)

# ── Wheel delta units (same numbering as DOM WheelEvent.deltaMode) ──────
DELTA_PIXEL: int = 0
DELTA_LINE: int = 1
DELTA_PAGE: int = 2
LINE_HEIGHT: float = 32.0

# ── Zoom ────────────────────────────────────────────────────────────────
MIN_ZOOM = -2   # 4x zoom out
MAX_ZOOM = 2    # 4x zoom in
ZOOM_LABELS: dict[int, str] = {
    -2: "0.25x", -1: "0.5x", 0: "1x", 1: "2x", 2: "4x",
}

DEFAULT_VIEW_WIDTH: float = 960.0
DEFAULT_VIEW_HEIGHT: float = 640.0

# Safety valve for stabilize(); each pass grows by expand_step
MAX_STABILIZE_PASSES: int = 64


@dataclass(frozen=True)
class ViewTransform:
    """Snapshot of the current pan/zoom for the renderer."""
    translate_x: float
    translate_y: float
    zoom_level: int
    width: float
    height: float

    @property
    def scale(self) -> float:
        return 2.0 ** self.zoom_level

    def to_screen(self, x: float, y: float) -> tuple[float, float]:
        s = self.scale
        return x * s + self.translate_x, y * s + self.translate_y


@dataclass(frozen=True)
class VisibleBounds:
    """Fractional lattice coordinates covered by the viewport."""
    min_fifth: float
    max_fifth: float
    min_third: float
    max_third: float


def normalize_wheel_delta(delta: float, mode: int, page_height: float) -> float:
    """Convert a wheel delta in device units to view units."""
    if mode == DELTA_PIXEL:
        return delta
    if mode == DELTA_LINE:
        return delta * LINE_HEIGHT
    return delta * page_height


class ExpansionTracker:
    """
    Owns the view transform and grows the lattice as the view approaches
    its materialized edge.
    """

    def __init__(
        self,
        store: LatticeStore,
        width: float = DEFAULT_VIEW_WIDTH,
        height: float = DEFAULT_VIEW_HEIGHT,
    ) -> None:
        self.store: LatticeStore = store
        self.width: float = width
        self.height: float = height
        # Origin node starts at the viewport centre
        self.translate_x: float = width / 2
        self.translate_y: float = height / 2
        self.zoom_level: int = 0
        self._expand_scheduled: bool = False
        self.expansions: int = 0  # checks that created nodes

    # ── Transform ──────────────────────────────────────────────────────

    @property
    def scale(self) -> float:
        return 2.0 ** self.zoom_level

    @property
    def transform(self) -> ViewTransform:
        return ViewTransform(self.translate_x, self.translate_y,
                             self.zoom_level, self.width, self.height)

    @property
    def expand_scheduled(self) -> bool:
        return self._expand_scheduled

    def pan(self, dx: float, dy: float) -> None:
        """Apply a pointer-drag delta (screen units)."""
        if dx == 0 and dy == 0:
            return
        self.translate_x += dx
        self.translate_y += dy
        self.request_expand()

    def wheel(self, dx: float, dy: float, mode: int = DELTA_PIXEL) -> None:
        """Apply a wheel/scroll delta; content moves against the delta."""
        dx = normalize_wheel_delta(dx, mode, self.height)
        dy = normalize_wheel_delta(dy, mode, self.height)
        self.pan(-dx, -dy)

    def zoom_in(self) -> None:
        if self.zoom_level < MAX_ZOOM:
            self._set_zoom(self.zoom_level + 1)

    def zoom_out(self) -> None:
        if self.zoom_level > MIN_ZOOM:
            self._set_zoom(self.zoom_level - 1)

    def _set_zoom(self, level: int) -> None:
        # Keep the lattice point under the viewport centre fixed
        cx, cy = self.width / 2, self.height / 2
        ratio = 2.0 ** (level - self.zoom_level)
        self.translate_x = cx - (cx - self.translate_x) * ratio
        self.translate_y = cy - (cy - self.translate_y) * ratio
        self.zoom_level = level
        self.request_expand()

    def resize(self, width: float, height: float) -> None:
        if width == self.width and height == self.height:
            return
        # Keep the view centred on the same lattice point
        self.translate_x += (width - self.width) / 2
        self.translate_y += (height - self.height) / 2
        self.width = width
        self.height = height
        self.request_expand()

    def center_on(self, x: float, y: float) -> None:
        """Move the view so layout position (x, y) sits at the centre."""
        s = self.scale
        self.translate_x = self.width / 2 - x * s
        self.translate_y = self.height / 2 - y * s
        self.request_expand()

    # ── Inversion ──────────────────────────────────────────────────────

    def screen_to_layout(self, sx: float, sy: float) -> tuple[float, float]:
        s = self.scale
        return (sx - self.translate_x) / s, (sy - self.translate_y) / s

    def screen_to_lattice(self, sx: float, sy: float) -> tuple[float, float]:
        """Fractional (fifth, third) under a screen point.

        For bounds estimation only; never used to identify a node.
        """
        cfg = self.store.config
        x, y = self.screen_to_layout(sx, sy)
        third = -y / cfg.spacing_y
        fifth = (x - third * (cfg.spacing_x / 2)) / cfg.spacing_x
        return fifth, third

    def visible_bounds(self) -> VisibleBounds:
        corners = (
            (0.0, 0.0),
            (self.width, 0.0),
            (0.0, self.height),
            (self.width, self.height),
        )
        coords = [self.screen_to_lattice(sx, sy) for sx, sy in corners]
        fifths = [c[0] for c in coords]
        thirds = [c[1] for c in coords]
        return VisibleBounds(min(fifths), max(fifths), min(thirds), max(thirds))

    # ── Expansion ──────────────────────────────────────────────────────

    def request_expand(self) -> None:
        """Mark that the view changed; the check runs on the next frame."""
        self._expand_scheduled = True

    def on_frame(self) -> int:
        """Run at most one pending expansion check. Returns nodes created."""
        if not self._expand_scheduled:
            return 0
        self._expand_scheduled = False
        return self.maybe_expand()

    def maybe_expand(self) -> int:
        """Grow every edge the visible area is within the margin of."""
        visible = self.visible_bounds()
        bounds = self.store.bounds
        margin = self.store.config.expand_margin
        step = self.store.config.expand_step

        created = 0
        if visible.min_fifth <= bounds.fifth_min + margin:
            created += self.store.extend_fifths(-step)
        if visible.max_fifth >= bounds.fifth_max - margin:
            created += self.store.extend_fifths(step)
        if visible.min_third <= bounds.third_min + margin:
            created += self.store.extend_thirds(-step)
        if visible.max_third >= bounds.third_max - margin:
            created += self.store.extend_thirds(step)

        if created:
            self.expansions += 1
            logger.debug("expanded by %d nodes (total %d)", created, self.store.node_count)
        return created

    def stabilize(self) -> int:
        """Expand until the current view needs nothing more."""
        self._expand_scheduled = False
        total = 0
        for _ in range(MAX_STABILIZE_PASSES):
            created = self.maybe_expand()
            if not created:
                break
            total += created
        return total
