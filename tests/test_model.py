import math
import random

import pytest

from lattice_model import (
    DEFAULT_BASE,
    LatticeConfig,
    LatticeStore,
    compute_note_name,
    create_node,
    edge_key,
    format_octave_offset,
    format_ratio_label,
    format_tooltip,
    node_id,
    parse_node_id,
)
from lattice_ratio import Ratio


# ── Node model ──────────────────────────────────────────────────────────

def test_origin_node():
    node = create_node(0, 0)
    assert node.id == "0_0"
    assert node.is_origin
    assert node.note_name == "C4"
    assert node.ratio_string == "1/1"
    assert node.position == (0.0, 0.0)
    assert node.frequency == pytest.approx(261.63)


def test_fifth_node():
    node = create_node(1, 0)
    assert node.note_name == "G4"
    assert node.normalized_ratio == Ratio(3, 2)
    assert node.position == (120.0, 0.0)
    assert node.frequency == pytest.approx(392.445)


def test_third_node():
    node = create_node(0, 1)
    assert node.note_name == "E4"
    assert node.ratio_string == "5/4"
    assert node.position == (60.0, -110.0)
    assert node.frequency == pytest.approx(327.0375)


@pytest.mark.parametrize(
    "coord, ratio, shift, name",
    [
        ((-1, 0), Ratio(4, 3), -1, "F4"),
        ((2, 0), Ratio(9, 8), 1, "D4"),
        ((0, -1), Ratio(8, 5), -1, "G#4"),
        ((4, 0), Ratio(81, 64), 2, "E4"),
        ((1, 1), Ratio(15, 8), 0, "B4"),
        ((12, 0), Ratio(531441, 524288), 7, "C4"),
    ],
)
def test_octave_reduced_nodes(coord, ratio, shift, name):
    node = create_node(*coord)
    assert node.normalized_ratio == ratio
    assert node.octave_shift == shift
    assert node.note_name == name


def test_note_name_octave_wraps():
    assert compute_note_name(-1) == "B3"
    assert compute_note_name(12) == "C5"
    assert compute_note_name(11) == "B4"


def test_note_name_tracks_the_ratio_pitch():
    # Pythagorean comma per fifth, syntonic-ish deviation per third
    fifth_dev = 1200 * math.log2(3 / 2) - 700
    third_dev = 1200 * math.log2(5 / 4) - 400
    for f in range(-15, 16):
        for t in range(-10, 11):
            node = create_node(f, t)
            cents = 1200 * math.log2(node.ratio_value)
            expected = f * fifth_dev + t * third_dev
            assert cents - 100 * node.semitone_offset == pytest.approx(expected, abs=1e-6)


def test_octave_override_changes_frequency_and_label():
    node = create_node(1, 0)
    node.octave_offset = -1
    node.retune(DEFAULT_BASE)
    assert node.frequency == pytest.approx(196.2225)
    assert format_ratio_label(node) == "3/2 ×2^-1"
    # identity does not change
    assert node.ratio_string == "3/2"
    assert node.note_name == "G4"


def test_format_octave_offset():
    assert format_octave_offset(0) == "±0"
    assert format_octave_offset(2) == "+2"
    assert format_octave_offset(-3) == "-3"


def test_tooltip_lists_every_field():
    text = format_tooltip(create_node(1, 0))
    assert "G4" in text
    assert "3/2" in text
    assert "392.4" in text
    assert "±0" in text


def test_node_id_round_trip_and_errors():
    assert node_id(-3, 2) == "-3_2"
    assert parse_node_id("-3_2") == (-3, 2)
    assert parse_node_id("0_-4") == (0, -4)
    for bad in ("abc", "_3", "x_1"):
        with pytest.raises(ValueError):
            parse_node_id(bad)


# ── Store ───────────────────────────────────────────────────────────────

def rectangle_edges(m: int, n: int) -> int:
    return (m - 1) * n + m * (n - 1)


def test_initial_rectangle(store):
    b = store.bounds
    assert (b.fifth_min, b.fifth_max, b.third_min, b.third_max) == (-10, 10, -8, 8)
    assert store.node_count == 21 * 17
    assert store.edge_count == rectangle_edges(21, 17)
    assert (0, 0) in store
    assert store.get("0_0") is store.get_at(0, 0)


def test_build_initial_is_idempotent(store):
    assert store.build_initial() == 0
    assert store.node_count == 21 * 17


def test_ensure_node_returns_the_same_instance(store):
    node = store.ensure_node(3, -2)
    assert store.ensure_node(3, -2) is node
    assert store.get("3_-2") is node


@pytest.mark.parametrize("nid", ["01_0", "1_00", "+1_0", "1_0_0", "1-0", "", "500_500"])
def test_get_rejects_ids_that_are_not_stored(store, nid):
    assert store.get(nid) is None
    assert store.get("1_0") is store.get_at(1, 0)


def test_edges_join_grid_neighbours_only(store):
    for a, b in store.edges():
        df = abs(a.fifth_steps - b.fifth_steps)
        dt = abs(a.third_steps - b.third_steps)
        assert (df, dt) in ((1, 0), (0, 1))


def test_edge_key_is_unordered():
    a, b = create_node(0, 0), create_node(1, 0)
    assert edge_key(a, b) == edge_key(b, a)


def test_edge_set_independent_of_materialization_order():
    config = LatticeConfig(initial_fifth_range=3, initial_third_range=2)
    ordered = LatticeStore(config)
    ordered.build_initial()

    coords = [(f, t) for f in range(-3, 4) for t in range(-2, 3)]
    random.Random(7).shuffle(coords)
    shuffled = LatticeStore(config)
    for f, t in coords:
        shuffled.ensure_node(f, t)

    def keys(s):
        return {edge_key(a, b) for a, b in s.edges()}

    assert keys(shuffled) == keys(ordered)
    assert shuffled.edge_count == rectangle_edges(7, 5)


def test_extend_fifths_and_thirds(store):
    assert store.extend_fifths(4) == 4 * 17
    assert store.bounds.fifth_max == 14
    assert store.extend_thirds(-4) == 4 * 25
    assert store.bounds.third_min == -12
    assert store.edge_count == rectangle_edges(25, 21)


def test_extend_zero_is_a_no_op(store):
    before = store.bounds
    assert store.extend_fifths(0) == 0
    assert store.bounds == before


def test_growth_stops_at_max_extent():
    store = LatticeStore(LatticeConfig(max_extent=12))
    store.build_initial()
    assert store.extend_fifths(4) == 2 * 17
    assert store.bounds.fifth_max == 12
    assert store.extend_fifths(4) == 0
    assert store.bounds.fifth_max == 12
    store.extend_fifths(-10)
    assert store.bounds.fifth_min == -12


def test_initial_range_is_clamped_by_max_extent():
    store = LatticeStore(LatticeConfig(max_extent=5))
    store.build_initial()
    b = store.bounds
    assert (b.fifth_min, b.fifth_max, b.third_min, b.third_max) == (-5, 5, -5, 5)


def test_unbounded_store_keeps_growing():
    store = LatticeStore(LatticeConfig(max_extent=None))
    store.build_initial()
    for _ in range(20):
        store.extend_fifths(4)
    assert store.bounds.fifth_max == 90


def test_retune_all_keeps_overrides(store):
    g = store.get("1_0")
    g.octave_offset = 1
    store.retune_all(440.0)
    assert store.base_frequency == 440.0
    assert store.get("0_0").frequency == pytest.approx(440.0)
    assert g.frequency == pytest.approx(440.0 * 1.5 * 2)
