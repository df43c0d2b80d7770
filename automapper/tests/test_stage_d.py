import random
from unittest.mock import patch

import pytest

from automapper.pipeline.config import (
    ChordConfig,
    GenerationOptions,
    PipelineConfig,
    PlayabilityConfig,
    StyleConfig,
)
from automapper.pipeline.models import Note, NoteType, TrainedModel, circular_distance
from automapper.pipeline.stage_d import (
    _chord_zones,
    adapt_linear_to_circular,
    add_bursts,
    add_symmetry,
    enforce_playability,
    enhance_climax,
    enhance_flows,
    enhance_style,
    group_by_time,
    inject_chords,
    post_process,
    smooth_transitions,
)
from automapper.pipeline.knowledge import EXPERT_KNOWLEDGE
from automapper.pipeline.validation import validate_chart
from automapper.tests.feature_utils import make_features


def _notes(times, zones=None):
    zones = zones if zones is not None else [i % 6 for i in range(len(times))]
    return [Note(time=float(t), zone=z) for t, z in zip(times, zones)]


# ------------------------------------------------------------
# Chords
# ------------------------------------------------------------

class TestChords:
    def test_needs_minimum_note_count(self):
        notes = _notes(range(0, 4000, 500))
        features = make_features(5000.0)
        added = inject_chords(notes, 3, features, ChordConfig(base_chance={3: 1.0}, max_chance=1.0), random.Random(0))
        assert added == []
        assert len(notes) == 8

    def test_certain_chance_adds_related_zones(self):
        notes = _notes(range(0, 6000, 400))
        regular_times = {n.time: n.zone for n in notes}
        features = make_features(7000.0)
        cfg = ChordConfig(base_chance={3: 1.0}, max_chance=1.0)
        added = inject_chords(notes, 3, features, cfg, random.Random(1))

        assert added
        for chord in added:
            assert chord.type == NoteType.CHORD
            assert chord.time in regular_times
            assert circular_distance(chord.zone, regular_times[chord.time]) in (1, 3)
        # first and last notes have only one neighbour
        assert all(c.time not in (0.0, 5600.0) for c in added)
        assert [n.time for n in notes] == sorted(n.time for n in notes)

    def test_crowded_notes_get_no_chords(self):
        notes = _notes(range(0, 4000, 200))
        features = make_features(5000.0)
        cfg = ChordConfig(base_chance={3: 1.0}, max_chance=1.0)
        assert inject_chords(notes, 3, features, cfg, random.Random(0)) == []

    def test_zero_chance_adds_nothing(self):
        notes = _notes(range(0, 8000, 400))
        features = make_features(9000.0)
        cfg = ChordConfig(base_chance={1: 0.0}, isolation_boost=0.0, max_chance=0.0)
        assert inject_chords(notes, 1, features, cfg, random.Random(0)) == []

    @pytest.mark.parametrize(
        "zone, roll, expected",
        [(2, 0.9, [0, 4]), (3, 0.9, [1, 5]), (0, 0.1, [3])],
    )
    def test_strong_hit_shapes(self, zone, roll, expected):
        zones = _chord_zones(zone, roll, True, 4, ChordConfig(), random.Random(0), EXPERT_KNOWLEDGE)
        assert zones == expected

    def test_weak_hit_at_low_difficulty_is_opposite_or_nothing(self):
        cfg = ChordConfig()
        assert _chord_zones(1, 0.2, False, 2, cfg, random.Random(0), EXPERT_KNOWLEDGE) == [4]
        assert _chord_zones(1, 0.5, False, 2, cfg, random.Random(0), EXPERT_KNOWLEDGE) == []


# ------------------------------------------------------------
# Linear -> circular
# ------------------------------------------------------------

class TestLinearAdaptation:
    def test_zigzag_becomes_clockwise_run(self):
        notes = _notes([0, 200, 400, 600], [2, 4, 2, 4])
        assert adapt_linear_to_circular(notes) == 1
        assert [n.zone for n in notes] == [2, 3, 4, 5]

    def test_wide_staircase_becomes_unit_steps(self):
        notes = _notes([0, 200, 400, 600], [0, 1, 4, 5])
        assert adapt_linear_to_circular(notes) == 1
        assert [n.zone for n in notes] == [0, 1, 2, 3]

    def test_falling_staircase(self):
        notes = _notes([0, 200, 400, 600], [5, 4, 1, 0])
        adapt_linear_to_circular(notes)
        assert [n.zone for n in notes] == [5, 4, 3, 2]

    def test_other_shapes_untouched(self):
        notes = _notes([0, 200, 400, 600], [0, 0, 1, 3])
        assert adapt_linear_to_circular(notes) == 0
        assert [n.zone for n in notes] == [0, 0, 1, 3]

    def test_chord_notes_ignored(self):
        notes = _notes([0, 200, 400, 600], [2, 4, 2, 4])
        notes.insert(1, Note(time=0.0, zone=5, type=NoteType.CHORD))
        adapt_linear_to_circular(notes)
        assert notes[1].zone == 5
        assert [n.zone for n in notes if n.type == NoteType.REGULAR] == [2, 3, 4, 5]


# ------------------------------------------------------------
# Style
# ------------------------------------------------------------

class TestStyle:
    def test_flow_windows_are_evenly_timed(self):
        notes = _notes([0, 100, 500, 600], [0, 1, 2, 3])
        assert enhance_flows(notes) == 1
        assert sorted(n.time for n in notes) == [0.0, 200.0, 400.0, 600.0]

    def test_symmetry_fills_wide_gaps(self):
        notes = _notes([0, 1000, 2000], [1, 2, 3])
        added = add_symmetry(notes, StyleConfig(symmetry_chance=1.0), random.Random(0))
        assert added == 2
        extra = sorted((n.time, n.zone) for n in notes[3:])
        assert extra == [(50.0, 4), (1050.0, 5)]

    def test_symmetry_offset_is_configurable(self):
        notes = _notes([0, 1000], [0, 1])
        add_symmetry(notes, StyleConfig(symmetry_chance=1.0, symmetry_offset_ms=200.0), random.Random(0))
        assert (notes[2].time, notes[2].zone) == (200.0, 3)

    def test_smoothing_breaks_double_opposite_jump(self):
        notes = _notes([0, 300, 600], [0, 3, 0])
        assert smooth_transitions(notes, StyleConfig(smoothing_chance=1.0), random.Random(0)) == 1
        assert notes[1].zone in (1, 5)

    def test_smoothing_uses_index_distance(self):
        # 0 -> 4 is only two steps around the ring but still a wide jump
        notes = _notes([0, 300, 600], [0, 4, 0])
        assert smooth_transitions(notes, StyleConfig(smoothing_chance=1.0), random.Random(0)) == 1
        assert notes[1].zone in (1, 5)

    def test_smoothing_ignores_small_jumps(self):
        notes = _notes([0, 300, 600], [0, 2, 0])
        assert smooth_transitions(notes, StyleConfig(smoothing_chance=1.0), random.Random(0)) == 0
        assert notes[1].zone == 2

    def test_bursts_follow_dense_hits(self):
        times = [0, 500, 600, 1200, 1700, 2200, 2700, 3200, 3700, 4200]
        notes = _notes(times)
        added = add_bursts(notes, 4, StyleConfig(), random.Random(0))
        assert added == 3
        burst_times = sorted(n.time for n in notes[len(times):])
        assert burst_times == [750.0, 820.0, 890.0]

    def test_standard_bursts_are_pairs(self):
        times = [0, 500, 600, 1200, 1700, 2200, 2700, 3200, 3700, 4200]
        notes = _notes(times)
        assert add_bursts(notes, 3, StyleConfig(), random.Random(0)) == 2

    def test_climax_lands_on_densest_window(self):
        times = list(range(0, 10000, 500)) + [10000 + 150 * i for i in range(10)]
        notes = _notes(times, [0] * len(times))
        start = enhance_climax(notes, 3, StyleConfig(climax_chance=1.0), random.Random(0))
        assert start == 10000.0
        assert [n.zone for n in notes[20:26]] == [0, 1, 2, 3, 4, 5]

    def test_climax_skipped_for_short_or_easy_charts(self):
        short = _notes(range(0, 5000, 500))
        assert enhance_climax(short, 5) is None
        long_easy = _notes(range(0, 20000, 500))
        assert enhance_climax(long_easy, 2) is None

    def test_low_intensity_skips_bursts_and_symmetry(self):
        notes = _notes(range(0, 10000, 700))
        stats = enhance_style(notes, 5, 0.2, StyleConfig(symmetry_chance=1.0), random.Random(0))
        assert stats["bursts"] == 0
        assert stats["symmetry"] == 0
        assert [n.time for n in notes] == sorted(n.time for n in notes)


# ------------------------------------------------------------
# Playability
# ------------------------------------------------------------

class TestPlayability:
    def test_minimum_gap(self):
        notes = _notes([0, 50, 100, 200], [0, 1, 2, 3])
        out = enforce_playability(notes, 5, 120.0, rng=random.Random(0))
        assert [n.time for n in out] == [0.0, 100.0, 200.0]

    def test_rapid_triple_collapses_then_quantizes(self):
        notes = _notes([0, 140, 280], [0, 1, 2])
        out = enforce_playability(notes, 3, 120.0, rng=random.Random(0))
        assert [n.time for n in out] == [0.0, 250.0]

    def test_triple_zone_repeat_broken(self):
        notes = _notes([0, 200, 400], [2, 2, 2])
        out = enforce_playability(notes, 5, 120.0, rng=random.Random(0))
        assert out[1].zone in (1, 3)

    def test_quantizes_easy_difficulties(self):
        notes = _notes([0, 260, 510], [0, 1, 2])
        out = enforce_playability(notes, 2, 120.0, rng=random.Random(0))
        assert [n.time for n in out] == [0.0, 250.0, 500.0]

    def test_quantization_never_crowds(self):
        notes = _notes([0, 190, 340], [0, 1, 2])
        out = enforce_playability(notes, 3, 120.0, rng=random.Random(0))
        assert [n.time for n in out] == [0.0, 190.0, 375.0]

    def test_hard_difficulties_keep_times(self):
        notes = _notes([0, 130, 260], [0, 1, 2])
        out = enforce_playability(notes, 4, 120.0, rng=random.Random(0))
        assert [n.time for n in out] == [0.0, 130.0, 260.0]

    def test_density_cap(self):
        notes = _notes(range(0, 3000, 200))
        cfg = PlayabilityConfig(max_notes_per_second={1: 4, 2: 6, 3: 3})
        out = enforce_playability(notes, 3, 0.0, cfg, random.Random(0))
        times = [n.time for n in out]
        for t in times:
            assert sum(1 for u in times if t <= u < t + 1000.0) <= 3

    def test_chords_survive_and_duplicates_drop(self):
        notes = [
            Note(time=0.0, zone=0),
            Note(time=0.0, zone=3, type=NoteType.CHORD),
            Note(time=0.0, zone=3, type=NoteType.CHORD),
            Note(time=500.0, zone=1),
        ]
        out = enforce_playability(notes, 3, 120.0, rng=random.Random(0))
        assert [(n.time, n.zone) for n in out] == [(0.0, 0), (0.0, 3), (500.0, 1)]
        assert out[0].type == NoteType.REGULAR

    @pytest.mark.parametrize("difficulty", [1, 2, 3, 4, 5])
    def test_invariants_hold_for_random_input(self, difficulty):
        rng = random.Random(difficulty)
        notes = sorted(
            (Note(time=float(rng.randrange(0, 30000)), zone=rng.randrange(6)) for _ in range(400)),
            key=lambda n: n.time,
        )
        out = enforce_playability(notes, difficulty, 128.0, rng=random.Random(0))
        assert out
        assert validate_chart(out, difficulty)["status"] == "pass"


def test_group_by_time_puts_regular_first():
    notes = [
        Note(time=100.0, zone=4, type=NoteType.CHORD),
        Note(time=100.0, zone=1),
        Note(time=0.0, zone=2),
    ]
    groups = group_by_time(notes)
    assert [len(g) for g in groups] == [1, 2]
    assert groups[1][0].type == NoteType.REGULAR


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

class TestPostProcess:
    def _run(self, options, model=None, config=None):
        notes = _notes(range(0, 20000, 400))
        features = make_features(21000.0)
        diag = {}
        out = post_process(notes, features, options, model, config, random.Random(3), diag)
        return notes, out, diag

    def test_records_counts_and_keeps_input(self):
        options = GenerationOptions(difficulty=3, use_trained_model=False, maimai_style=True)
        notes, out, diag = self._run(options)
        counts = diag["counts"]
        assert counts["notes_before_chords"] == 50
        assert counts["notes_after_chords"] == counts["notes_before_chords"] + counts["chords_added"]
        assert counts["notes_after_playability"] == len(out)
        assert "style" in diag
        assert [n.zone for n in notes] == [i % 6 for i in range(50)]

    def test_style_skipped_with_trained_patterns(self):
        options = GenerationOptions(difficulty=3, use_trained_model=True, maimai_style=True)
        _, _, diag = self._run(options)
        assert "style" not in diag
        assert "linear_windows_rewritten" not in diag

    def test_linear_models_trigger_adaptation(self):
        options = GenerationOptions(difficulty=3, use_trained_model=True)
        model = TrainedModel(zone_transitions={"0->1": 1}, source_format="osu")
        _, _, diag = self._run(options, model)
        assert "linear_windows_rewritten" in diag

    def test_failing_pass_is_skipped_when_tolerated(self):
        options = GenerationOptions(difficulty=3, use_trained_model=False)
        with patch("automapper.pipeline.stage_d.inject_chords", side_effect=RuntimeError("boom")):
            _, out, diag = self._run(options)
        assert out
        assert any(f.startswith("chords") for f in diag["fallbacks"])
        assert diag["counts"]["notes_after_chords"] == 50

    def test_failing_pass_raises_when_not_tolerated(self):
        options = GenerationOptions(difficulty=3, use_trained_model=False)
        config = PipelineConfig(tolerate_stage_errors=False)
        with patch("automapper.pipeline.stage_d.inject_chords", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                self._run(options, config=config)
