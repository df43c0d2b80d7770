import json

import soundfile as sf

from automapper.cli import main
from automapper.pipeline.models import Chart, Note
from automapper.tests.audio_utils import generate_click_train, regular_click_times

SR = 22050


def write_charts(tmp_path, count=2):
    paths = []
    for c in range(count):
        chart = Chart(notes=[Note(time=i * 400.0, zone=(i + c) % 6) for i in range(30)], difficulty=3)
        path = tmp_path / f"chart{c}.json"
        path.write_text(json.dumps(chart.to_dict()), encoding="utf-8")
        paths.append(str(path))
    return paths


def test_train_then_generate(tmp_path):
    model_path = tmp_path / "model.json"
    assert main(["train", *write_charts(tmp_path), "-o", str(model_path)]) == 0
    assert json.loads(model_path.read_text())["chartsUsed"] == 2

    audio_path = tmp_path / "clicks.wav"
    sf.write(str(audio_path), generate_click_train(regular_click_times(6.0, 0.5, 0.25), 6.0, SR), SR)
    out_path = tmp_path / "out" / "chart.json"
    code = main([
        "generate", str(audio_path),
        "-o", str(out_path),
        "--difficulty", "3",
        "--model", str(model_path),
        "--seed", "5",
        "--set", "filter.beat_weight=0.5",
        "--log-dir", str(tmp_path / "logs"),
    ])
    assert code == 0
    result = json.loads(out_path.read_text())
    assert result["notes"]
    assert result["diagnostics"]["model"] == "trained"
    assert list((tmp_path / "logs").iterdir())


def test_train_without_usable_charts(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{oops", encoding="utf-8")
    assert main(["train", str(bad), "-o", str(tmp_path / "model.json")]) == 1
    assert not (tmp_path / "model.json").exists()


def test_generate_rejects_unknown_override(tmp_path):
    code = main(["generate", str(tmp_path / "a.wav"), "--set", "filter.no_such_field=1"])
    assert code == 2


def test_generate_reports_undecodable_audio(tmp_path):
    audio_path = tmp_path / "broken.wav"
    audio_path.write_bytes(b"not audio")
    out_path = tmp_path / "chart.json"
    assert main(["generate", str(audio_path), "-o", str(out_path)]) == 1
    assert json.loads(out_path.read_text())["notes"] == []
