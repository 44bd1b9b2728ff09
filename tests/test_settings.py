from gfcity.config.settings import get_logging_config, get_settings


def test_packaged_defaults():
    settings = get_settings()
    assert settings.fees.default_amount == 5000
    assert settings.fees.currency == "UGX"
    assert settings.ranking.limit_default == 5
    assert settings.ranking.stale_after_seconds == 900
    assert settings.ranking.geo_fallback == "fail"
    assert settings.validation.phone_pattern == r"^\+256[0-9]{9}$"
    assert set(settings.notifications.templates) >= {
        "payment_confirmed",
        "payment_failed",
        "report_assigned",
        "collection_completed",
        "welcome",
    }


def test_env_overrides_are_applied(monkeypatch):
    monkeypatch.setenv("DEFAULT_COLLECTION_FEE", "7000")
    monkeypatch.setenv("PESAPAL_ENVIRONMENT", "live")
    monkeypatch.setenv("FLUTTERWAVE_SECRET_HASH", "abc")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.fees.default_amount == 7000
        assert settings.payments.pesapal.base_url == "https://pay.pesapal.com/v3/api"
        assert settings.payments.flutterwave.secret_hash == "abc"
    finally:
        get_settings.cache_clear()


def test_external_config_file(monkeypatch, tmp_path):
    path = tmp_path / "gfcity.yaml"
    path.write_text("fees:\n  default_amount: 3000\nranking:\n  geo_fallback: degraded\n", encoding="utf-8")
    monkeypatch.setenv("GFCITY_CONFIG_PATH", str(path))
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.fees.default_amount == 3000
        assert settings.ranking.geo_fallback == "degraded"
        # Sections missing from the file keep their model defaults.
        assert settings.verification.code_length == 6
    finally:
        get_settings.cache_clear()


def test_logging_config_is_dictconfig_shaped():
    cfg = get_logging_config()
    assert cfg["version"] == 1
    assert "console" in cfg["handlers"]
