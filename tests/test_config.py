import pytest

from refinergate.config import Deployment, Environment, Settings


def test_reset_tokens_hidden_by_default(monkeypatch):
    for name in ("ENVIRONMENT", "EXPOSE_RESET_TOKENS", "TEST_MODE"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()
    assert settings.environment is Environment.DEVELOPMENT
    assert settings.expose_reset_tokens is False
    assert Deployment.from_settings(settings).expose_reset_tokens is False


def test_exposure_ignored_without_explicit_environment():
    settings = Settings(expose_reset_tokens=True, jwt_secret="s")
    assert settings.environment is Environment.DEVELOPMENT
    assert Deployment.from_settings(settings).expose_reset_tokens is False


@pytest.mark.parametrize(
    "environment, expected",
    [("development", True), ("test", True), ("production", False)],
)
def test_exposure_follows_explicit_environment(environment, expected):
    settings = Settings(environment=environment, expose_reset_tokens=True, jwt_secret="s")
    assert Deployment.from_settings(settings).expose_reset_tokens is expected


def test_exposure_from_environment_variables(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("EXPOSE_RESET_TOKENS", "true")
    assert Deployment.from_settings(Settings.from_env()).expose_reset_tokens is True
