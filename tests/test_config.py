import os

import pytest

from docuscan.utils.config import Settings, load_settings


@pytest.fixture
def env(monkeypatch):
    clean = {k: v for k, v in os.environ.items() if not k.startswith(("DOCUSCAN_", "SUPABASE_"))}
    monkeypatch.setattr(os, "environ", clean)
    return clean


def write_env(tmp_path, text):
    path = tmp_path / ".env"
    path.write_text(text)
    return path


def test_defaults(env, tmp_path):
    settings = load_settings(write_env(tmp_path, ""))

    assert settings == Settings()
    assert settings.bucket == "letters"
    assert settings.free_scan_limit == 3
    assert settings.poll_interval == 5.0
    assert settings.target_bytes == 1024 * 1024


def test_values_come_from_env_file(env, tmp_path):
    path = write_env(tmp_path, "\n".join([
        "SUPABASE_URL=https://project.supabase.co",
        "SUPABASE_KEY=anon-key",
        "DOCUSCAN_OWNER_ID=user-42",
        "DOCUSCAN_LANGUAGE=de",
        "DOCUSCAN_POLL_INTERVAL=2.5",
        "DOCUSCAN_FREE_SCAN_LIMIT=10",
        "DOCUSCAN_BACKEND_URL=https://api.example",
    ]))

    settings = load_settings(path)

    assert settings.supabase_url == "https://project.supabase.co"
    assert settings.require_owner() == "user-42"
    assert settings.language == "de"
    assert settings.poll_interval == 2.5
    assert settings.free_scan_limit == 10
    assert settings.backend_url == "https://api.example"
    settings.require_supabase()


def test_process_environment_wins_over_file(env, tmp_path):
    env["DOCUSCAN_BUCKET"] = "from-env"
    settings = load_settings(write_env(tmp_path, "DOCUSCAN_BUCKET=from-file\n"))
    assert settings.bucket == "from-env"


@pytest.mark.parametrize("name,value", [
    ("DOCUSCAN_POLL_INTERVAL", "soon"),
    ("DOCUSCAN_FREE_SCAN_LIMIT", "0"),
    ("DOCUSCAN_UPLOAD_TIMEOUT", "-1"),
    ("DOCUSCAN_LANGUAGE", "klingon"),
])
def test_invalid_values_name_the_variable(env, tmp_path, name, value):
    env[name] = value
    with pytest.raises(ValueError, match=name):
        load_settings(write_env(tmp_path, ""))


def test_missing_env_file(env, tmp_path):
    with pytest.raises(ValueError, match="Env file not found"):
        load_settings(tmp_path / "nope.env")


def test_require_helpers_report_missing_values():
    settings = Settings(supabase_url="https://project.supabase.co")
    with pytest.raises(ValueError, match="SUPABASE_KEY"):
        settings.require_supabase()
    with pytest.raises(ValueError, match="DOCUSCAN_OWNER_ID"):
        settings.require_owner()
