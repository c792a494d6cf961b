import pytest
from pydantic import ValidationError

from accountcore.config import Settings, TokenPurpose, get_settings, reset_settings_cache

MASTER = "unit-test-master-secret-with-enough-length"


def _settings(**overrides) -> Settings:
    return Settings(jwt_secret=MASTER, **overrides)


def test_purpose_secrets_are_derived_and_distinct():
    settings = _settings()

    secrets = {settings.token_secret(purpose) for purpose in TokenPurpose}

    assert len(secrets) == len(TokenPurpose)
    assert MASTER not in secrets


def test_derivation_is_stable():
    assert _settings().token_secret(TokenPurpose.RESET) == _settings().token_secret(TokenPurpose.RESET)


def test_explicit_secret_wins():
    settings = _settings(refresh_token_secret="explicit-refresh-secret")

    assert settings.token_secret(TokenPurpose.REFRESH) == "explicit-refresh-secret"
    assert settings.token_secret(TokenPurpose.ACCESS) != "explicit-refresh-secret"


def test_shared_purpose_secret_is_rejected():
    with pytest.raises(ValidationError):
        _settings(access_token_secret="same", refresh_token_secret="same")


def test_default_ttls():
    settings = _settings()

    assert settings.token_ttl_minutes(TokenPurpose.ACCESS) == 15
    assert settings.token_ttl_minutes(TokenPurpose.REFRESH) == 10 * 24 * 60
    assert settings.token_ttl_minutes(TokenPurpose.RESET) == 15
    assert settings.token_ttl_minutes(TokenPurpose.VERIFY) == 24 * 60


@pytest.mark.parametrize("ttl", [0, -5])
def test_non_positive_ttl_is_rejected(ttl):
    with pytest.raises(ValidationError):
        _settings(access_token_ttl_minutes=ttl)


def test_samesite_is_normalized():
    assert _settings(cookie_samesite="Strict").cookie_samesite == "strict"

    with pytest.raises(ValidationError):
        _settings(cookie_samesite="sometimes")


def test_cors_origins_split_from_string():
    settings = _settings(cors_allow_origins=" https://a.example, ,https://b.example ")

    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_generated_secret_is_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_from_env_reads_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", MASTER)
    monkeypatch.setenv("ALLOW_SIGNUP", "false")
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://app.example")

    settings = Settings.from_env()

    assert settings.allow_signup is False
    assert settings.access_token_ttl_minutes == 5
    assert settings.cors_allow_origins == ["https://app.example"]


def test_from_env_falls_back_to_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SMTP_HOST", raising=False)
    (tmp_path / ".env").write_text("SMTP_HOST=mail.example\n")

    assert Settings.from_env().smtp_host == "mail.example"


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    cached = get_settings()

    assert get_settings() is cached

    reset_settings_cache()
    assert get_settings() is not cached
