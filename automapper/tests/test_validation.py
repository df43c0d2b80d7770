import pytest

from automapper.pipeline.models import Note, NoteType
from automapper.pipeline.validation import validate_chart


def test_valid_chart_passes():
    notes = [
        Note(time=0.0, zone=0),
        Note(time=0.0, zone=3, type=NoteType.CHORD),
        Note(time=300.0, zone=1),
    ]
    assert validate_chart(notes, 1) == {"status": "pass"}


def test_empty_chart_passes():
    assert validate_chart([], 3)["status"] == "pass"


@pytest.mark.parametrize(
    "notes, fragment",
    [
        ([Note(time=500.0, zone=0), Note(time=100.0, zone=1)], "not sorted"),
        ([Note(time=0.0, zone=7)], "illegal zones"),
        ([Note(time=0.0, zone=2), Note(time=0.0, zone=2)], "Duplicate"),
        ([Note(time=0.0, zone=2), Note(time=100.0, zone=3)], "below"),
    ],
)
def test_violations_reported(notes, fragment):
    result = validate_chart(notes, 3)
    assert result["status"] == "fail"
    assert any(fragment in v for v in result["violations"])


def test_gap_threshold_follows_difficulty():
    notes = [Note(time=0.0, zone=0), Note(time=100.0, zone=1)]
    assert validate_chart(notes, 4)["status"] == "pass"
    assert validate_chart(notes, 2)["status"] == "fail"


def test_strict_mode_raises():
    with pytest.raises(AssertionError, match="Chart Contract Violation"):
        validate_chart([Note(time=0.0, zone=9)], 3, strict=True)
