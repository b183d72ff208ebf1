import pytest

from persona_veil.config import Settings
from persona_veil.errors import ConfigError

ENV = {
    "ANONYMOUS_JWT_SECRET": "a" * 32,
    "ANONYMOUS_SESSION_SECRET": "b" * 32,
    "PROFESSIONAL_JWT_SECRET": "c" * 32,
}


def test_from_env_defaults():
    settings = Settings.from_env(ENV)
    assert settings.max_personas_per_user == 3
    assert settings.anonymity_mix_factor == 5
    assert settings.anonymous_token_ttl_hours == 24
    assert settings.rsa_key_size == 2048


def test_from_env_overrides():
    settings = Settings.from_env({**ENV, "MAX_PERSONAS_PER_USER": "5", "LOG_LEVEL": "debug"})
    assert settings.max_personas_per_user == 5
    assert settings.log_level == "DEBUG"


def test_missing_secret_fails_closed():
    env = dict(ENV)
    del env["ANONYMOUS_SESSION_SECRET"]
    with pytest.raises(ConfigError):
        Settings.from_env(env)


def test_short_secret_rejected():
    with pytest.raises(ConfigError):
        Settings.from_env({**ENV, "ANONYMOUS_JWT_SECRET": "short"})


def test_shared_secrets_rejected():
    with pytest.raises(ConfigError):
        Settings.from_env({**ENV, "PROFESSIONAL_JWT_SECRET": ENV["ANONYMOUS_JWT_SECRET"]})


@pytest.mark.parametrize("name,value", [
    ("ANONYMOUS_TOKEN_TTL_HOURS", "48"),
    ("RSA_KEY_SIZE", "1024"),
    ("MAX_PERSONAS_PER_USER", "0"),
    ("MAX_PERSONAS_PER_USER", "three"),
])
def test_invalid_values_rejected(name, value):
    with pytest.raises(ConfigError):
        Settings.from_env({**ENV, name: value})


def test_secrets_not_in_repr():
    assert "a" * 32 not in repr(Settings.from_env(ENV))
