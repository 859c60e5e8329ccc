import importlib

from samplerec import config


def test_env_overrides_and_validation(monkeypatch):
    monkeypatch.setenv("SAMPLEREC_REFRESH_DEBOUNCE", "0.5")
    monkeypatch.setenv("SAMPLEREC_TX_RETRIES", "0")  # min clamp
    monkeypatch.setenv("SAMPLEREC_FEATURED_LAG_DAYS", "-3")  # min clamp

    cfg = importlib.reload(config)

    assert cfg.REFRESH_DEBOUNCE_SECONDS == 0.5
    assert cfg.TRANSACTION_MAX_RETRIES == 1
    assert cfg.FEATURED_LAG_DAYS == 0


def test_db_path_respects_env(fresh_config, tmp_path):
    assert fresh_config.DB_PATH == tmp_path / "test.db"


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("SAMPLEREC_REFRESH_DEBOUNCE", "soon")
    monkeypatch.setenv("SAMPLEREC_TX_RETRIES", "many")
    monkeypatch.setenv("SAMPLEREC_FEATURED_LAG_DAYS", "bad-int")

    cfg = importlib.reload(config)

    assert cfg.REFRESH_DEBOUNCE_SECONDS == 2.0
    assert cfg.TRANSACTION_MAX_RETRIES == 5
    assert cfg.FEATURED_LAG_DAYS == 2


def test_webhook_defaults_to_disabled(monkeypatch):
    monkeypatch.delenv("SAMPLEREC_WEBHOOK_URL", raising=False)

    cfg = importlib.reload(config)

    assert cfg.NOTIFICATION_WEBHOOK_URL == ""
