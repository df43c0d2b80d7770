import io

import pytest
import soundfile as sf
from fastapi.testclient import TestClient

from automapper.main import app, parse_bool_env
from automapper.tests.audio_utils import generate_click_train, regular_click_times

SR = 22050


@pytest.fixture(scope="module")
def client():
    return TestClient(app)


@pytest.fixture(scope="module")
def wav_bytes():
    audio = generate_click_train(regular_click_times(8.0, 0.5, 0.25), 8.0, SR)
    buf = io.BytesIO()
    sf.write(buf, audio, SR, format="WAV")
    return buf.getvalue()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert isinstance(body["model_loaded"], bool)


def test_automap_upload(client, wav_bytes):
    response = client.post(
        "/api/automap",
        files={"file": ("clicks.wav", wav_bytes, "audio/wav")},
        data={"difficulty": "3", "use_trained_model": "false", "maimai_style": "false"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["notes"]
    assert set(body["notes"][0]) == {"time", "zone", "type"}
    assert body["diagnostics"]["options"]["difficulty"] == 3
    assert body["diagnostics"]["model"] == "none"
    times = [n["time"] for n in body["notes"]]
    assert times == sorted(times)


def test_automap_crops_audio(client, wav_bytes):
    response = client.post(
        "/api/automap",
        files={"file": ("clicks.wav", wav_bytes, "audio/wav")},
        data={"difficulty": "2", "start_offset": "1.0", "max_duration": "3.0"},
    )
    assert response.status_code == 200
    assert all(n["time"] <= 3000.0 for n in response.json()["notes"])


def test_automap_garbage_upload(client):
    response = client.post(
        "/api/automap",
        files={"file": ("broken.wav", b"definitely not audio", "audio/wav")},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["notes"] == []
    assert body["diagnostics"]["error"]


@pytest.mark.parametrize(
    "value, expected",
    [(None, False), ("1", True), ("YES", True), (" on ", True), ("0", False), ("nope", False)],
)
def test_parse_bool_env(value, expected):
    assert parse_bool_env(value) is expected
