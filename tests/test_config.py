"""Tests for settings loading."""

from mail_sync.config import SyncSettings, load_settings


def test_missing_file_uses_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.ini"))
    assert settings.max_attempts == 3
    assert settings.poll_interval_minutes == 15
    assert settings.api_tokens == {}


def test_values_from_ini(tmp_path, monkeypatch):
    monkeypatch.delenv("MAIL_SYNC_DISPATCH_SECRET", raising=False)
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "from-env")
    path = tmp_path / "config.ini"
    path.write_text(
        "[storage]\ndb_path = /tmp/mail.db\n"
        "[sync]\nmax_attempts = 5\nbackoff_base_seconds = 0.5\n"
        "[dispatch]\nsecret = s3cret\n"
        "[gmail]\nclient_secret = from-file\n"
        "[auth]\ntokens = abc:user-1, def:user-2, malformed\n"
    )

    settings = load_settings(str(path))

    assert settings.db_path == "/tmp/mail.db"
    assert settings.max_attempts == 5
    assert settings.backoff_base_seconds == 0.5
    assert settings.dispatch_secret == "s3cret"
    assert settings.google_client_secret == "from-env"
    assert settings.api_tokens == {"abc": "user-1", "def": "user-2"}
    assert settings.run_timeout_seconds == SyncSettings().run_timeout_seconds
