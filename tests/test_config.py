import pydantic
import pytest

from apim_lifecycle.config import Settings
from apim_lifecycle.errors import ConfigurationError


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("APIM_REQUEST_TIMEOUT", raising=False)
        settings = Settings(_env_file=None)
        assert settings.request_timeout == 30.0
        assert settings.api_version == "2022-08-01"
        assert "subscription-key" in settings.reserved_query_names

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("APIM_SERVICE_NAME", "contoso-apim")
        monkeypatch.setenv("APIM_REQUEST_TIMEOUT", "12.5")
        monkeypatch.setenv("APIM_ACCESS_TOKEN", "tok")
        settings = Settings(_env_file=None)
        assert settings.service_name == "contoso-apim"
        assert settings.request_timeout == 12.5
        assert settings.access_token.get_secret_value() == "tok"
        assert "tok" not in repr(settings)

    def test_require_remote_lists_missing_variables(self, monkeypatch):
        for name in ("SUBSCRIPTION_ID", "RESOURCE_GROUP", "SERVICE_NAME", "ACCESS_TOKEN"):
            monkeypatch.delenv(f"APIM_{name}", raising=False)
        monkeypatch.setenv("APIM_SERVICE_NAME", "contoso-apim")
        with pytest.raises(ConfigurationError) as exc:
            Settings(_env_file=None).require_remote()
        message = str(exc.value)
        assert "APIM_SUBSCRIPTION_ID" in message
        assert "APIM_ACCESS_TOKEN" in message
        assert "APIM_SERVICE_NAME" not in message

    def test_require_remote_passes_when_complete(self):
        settings = Settings(
            _env_file=None,
            subscription_id="sub",
            resource_group="rg",
            service_name="svc",
            access_token="tok",
        )
        settings.require_remote()

    def test_timeout_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(_env_file=None, request_timeout=0)
