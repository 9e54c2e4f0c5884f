from pathlib import Path

from quiz_client.config import Settings


def test_defaults():
    s = Settings(_env_file=None)

    assert s.API_BASE_URL == "http://localhost:8000/api"
    assert s.CREDENTIAL_BACKEND == "file"
    assert s.AUTOSAVE_DEBOUNCE_SECONDS == 1.5
    assert s.TIMER_TICK_SECONDS == 1.0
    assert s.FINALIZE_RETRY_SECONDS < s.FINALIZE_RETRY_MAX_SECONDS


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("API_BASE_URL", "https://exam.example.com/api")
    monkeypatch.setenv("CREDENTIAL_FILE", str(tmp_path / "creds.json"))
    monkeypatch.setenv("AUTOSAVE_DEBOUNCE_SECONDS", "0.5")

    s = Settings(_env_file=None)

    assert s.API_BASE_URL == "https://exam.example.com/api"
    assert s.CREDENTIAL_FILE == Path(tmp_path / "creds.json")
    assert s.AUTOSAVE_DEBOUNCE_SECONDS == 0.5


def test_env_file(tmp_path):
    env = tmp_path / ".env"
    env.write_text("CREDENTIAL_BACKEND=redis\nREDIS_NAMESPACE=exam\n")

    s = Settings(_env_file=env)

    assert s.CREDENTIAL_BACKEND == "redis"
    assert s.REDIS_NAMESPACE == "exam"
