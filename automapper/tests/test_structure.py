import numpy as np

from automapper.pipeline.models import EnergyEnvelope, Onset, OnsetType, Phrase, PhraseType, SectionType
from automapper.pipeline.structure import (
    analyze_song_structure,
    classify_phrase,
    group_into_phrases,
    plan_note_distribution,
)


def _onsets(times, kind=OnsetType.WEAK):
    return [Onset(time=float(t), strength=1.5, type=kind) for t in times]


def test_phrases_split_on_gap():
    phrases = group_into_phrases(_onsets([0, 100, 200, 1500, 1600]))
    assert [(p.start, p.end) for p in phrases] == [(0, 200), (1500, 1600)]
    assert [len(p.onsets) for p in phrases] == [3, 2]


def test_phrases_split_on_max_length():
    phrases = group_into_phrases(_onsets(range(0, 6001, 500)))
    assert phrases[0].start == 0 and phrases[0].end == 4000
    assert phrases[1].start == 4500


def test_no_onsets_no_phrases():
    assert group_into_phrases([]) == []


def test_stream_phrase():
    times = np.arange(0, 1000, 50)
    energy = EnergyEnvelope(np.arange(0, 1001, 25), np.full(41, 0.8))
    phrase = Phrase(start=0.0, end=950.0, onsets=_onsets(times))
    assert classify_phrase(phrase, energy) == PhraseType.STREAM


def test_accent_phrase():
    phrase = Phrase(start=0.0, end=1000.0, onsets=_onsets([0, 500, 1000], OnsetType.STRONG))
    assert classify_phrase(phrase, None) == PhraseType.ACCENT


def test_sparse_phrase():
    phrase = Phrase(start=0.0, end=2000.0, onsets=_onsets([0, 2000]))
    assert classify_phrase(phrase, None) == PhraseType.SPARSE


def test_flowing_phrase():
    onsets = _onsets([0, 200, 400]) + _onsets([600], OnsetType.SUSTAINED)
    phrase = Phrase(start=0.0, end=600.0, onsets=onsets)
    assert classify_phrase(phrase, None) == PhraseType.FLOWING


def test_single_onset_phrase_uses_minimum_length():
    phrase = Phrase(start=100.0, end=100.0, onsets=_onsets([100]))
    assert classify_phrase(phrase, None) == PhraseType.NORMAL


def _sectioned_energy():
    t = np.arange(0, 60000, 25, dtype=np.float64)
    values = np.where(t < 10000, 0.2, np.where((t >= 20000) & (t < 30000), 1.0, 0.5))
    return EnergyEnvelope(t, values)


def test_song_structure_labels():
    structure = analyze_song_structure(_sectioned_energy(), [], 60000.0)
    labels = [s.type for s in structure.sections]
    assert labels == [
        SectionType.INTRO,
        SectionType.BRIDGE,
        SectionType.CHORUS,
        SectionType.BRIDGE,
        SectionType.BRIDGE,
        SectionType.OUTRO,
    ]
    assert structure.section_at(25000).type == SectionType.CHORUS


def test_dense_mid_energy_segment_is_verse():
    onsets = _onsets(np.arange(10000, 20000, 200))
    structure = analyze_song_structure(_sectioned_energy(), onsets, 60000.0)
    assert structure.sections[1].onset_density == 5.0
    assert structure.sections[1].type == SectionType.VERSE


def test_structure_of_empty_track():
    structure = analyze_song_structure(None, [], 0.0)
    assert structure.sections == []


def test_note_plan():
    structure = analyze_song_structure(_sectioned_energy(), [], 60000.0)
    plan = plan_note_distribution(structure, 3)
    assert plan.base_notes_per_sec == 4.0
    assert plan.target_notes == sum(p.target_notes for p in plan.sections)
    assert plan.sections[2].target_notes == 52
    assert plan.multiplier_at(25000) == 1.3
    assert plan.multiplier_at(70000) == 1.0
