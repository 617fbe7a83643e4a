"""Tests for configuration models."""

import pytest
from pydantic import ValidationError

from pveshape.models.config import AgentConfig, ApiConfig, EngineConfig, PveshapeConfig


API = {
    "api_url": "https://pve.example.com:8006/api2/json",
    "api_token_id": "root@pam!pveshape",
    "api_token_secret": "secret",
}


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep PVE_* variables of the developer's shell out of these tests."""
    for name in ApiConfig.model_fields:
        monkeypatch.delenv("PVE_" + name.upper(), raising=False)


class TestAgentConfig:
    """Test AgentConfig model."""

    def test_default_values(self):
        """Test default agent configuration values."""
        config = AgentConfig()

        assert config.reconciliation_interval == 60
        assert config.log_level == "INFO"
        assert config.config_dir == "./configs"
        assert config.state_dir == "./state"

    def test_log_level_validation(self):
        """Test log level validation."""
        for level in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            config = AgentConfig(log_level=level)
            assert config.log_level == level.upper()

        # Case insensitive
        config = AgentConfig(log_level="debug")
        assert config.log_level == "DEBUG"

        with pytest.raises(ValidationError) as exc_info:
            AgentConfig(log_level="INVALID")

        assert "log_level" in str(exc_info.value)

    def test_interval_validation(self):
        """Test reconciliation interval validation."""
        with pytest.raises(ValidationError) as exc_info:
            AgentConfig(reconciliation_interval=4)

        assert "reconciliation_interval" in str(exc_info.value)


class TestApiConfig:
    """Test ApiConfig model."""

    def test_minimal_config(self):
        """Test required fields and defaults."""
        config = ApiConfig(**API)

        assert config.api_url == "https://pve.example.com:8006/api2/json"
        assert config.tls_insecure is False
        assert config.timeout == 60
        assert config.debug is False
        assert config.header_map() == {}
        assert config.user_id == "root@pam"

    def test_trailing_slash_is_dropped(self):
        """Test API URL normalisation."""
        config = ApiConfig(**{**API, "api_url": "https://pve:8006/api2/json/"})
        assert config.api_url == "https://pve:8006/api2/json"

    def test_invalid_url(self):
        """Test API URL validation."""
        with pytest.raises(ValidationError) as exc_info:
            ApiConfig(**{**API, "api_url": "pve:8006"})

        assert "Invalid API URL" in str(exc_info.value)

    def test_token_id_needs_token_name(self):
        """Test token id validation."""
        with pytest.raises(ValidationError) as exc_info:
            ApiConfig(**{**API, "api_token_id": "root@pam"})

        assert "user@realm!token" in str(exc_info.value)

    def test_timeout_must_be_positive(self):
        """Test timeout validation."""
        with pytest.raises(ValidationError):
            ApiConfig(**{**API, "timeout": 0})

    def test_http_headers(self):
        """Test extra header parsing."""
        config = ApiConfig(**{**API, "http_headers": "X-One, 1,X-Two,2"})
        assert config.header_map() == {"X-One": "1", "X-Two": "2"}

        with pytest.raises(ValidationError):
            ApiConfig(**{**API, "http_headers": "X-One,1,X-Two"})

    def test_values_from_environment(self, monkeypatch):
        """Test that missing values come from PVE_* variables."""
        monkeypatch.setenv("PVE_API_URL", "https://env.example.com:8006/api2/json")
        monkeypatch.setenv("PVE_API_TOKEN_ID", "automation@pve!ci")
        monkeypatch.setenv("PVE_API_TOKEN_SECRET", "from-env")
        monkeypatch.setenv("PVE_TLS_INSECURE", "1")
        monkeypatch.setenv("PVE_DEBUG", "false")
        monkeypatch.setenv("PVE_TIMEOUT", "120")

        config = ApiConfig()

        assert config.api_url == "https://env.example.com:8006/api2/json"
        assert config.api_token_id == "automation@pve!ci"
        assert config.api_token_secret == "from-env"
        assert config.tls_insecure is True
        assert config.debug is False
        assert config.timeout == 120

    def test_file_values_win_over_environment(self, monkeypatch):
        """Test precedence of explicit values."""
        monkeypatch.setenv("PVE_API_TOKEN_SECRET", "from-env")

        config = ApiConfig(**API)

        assert config.api_token_secret == "secret"


class TestEngineConfig:
    """Test EngineConfig model."""

    def test_default_values(self):
        """Test default tuning values."""
        config = EngineConfig()

        assert config.id_retry_attempts == 5
        assert config.id_retry_backoff == 0.5
        assert config.agent_poll_interval == 2.0
        assert config.agent_poll_deadline == 300.0
        assert config.attachment_strategy == {"qemu": "config", "lxc": "diff"}

    def test_attachment_strategy_values(self):
        """Test that only known strategies are accepted."""
        config = EngineConfig(attachment_strategy={"qemu": "diff"})
        assert config.attachment_strategy == {"qemu": "diff"}

        with pytest.raises(ValidationError):
            EngineConfig(attachment_strategy={"qemu": "bulk"})

    def test_retry_attempts_minimum(self):
        """Test that at least one attempt is made."""
        with pytest.raises(ValidationError):
            EngineConfig(id_retry_attempts=0)


class TestPveshapeConfig:
    """Test main configuration model."""

    def test_full_config(self):
        """Test loading every section."""
        config = PveshapeConfig(
            api=API,
            engine={"id_retry_attempts": 3},
            agent={"log_level": "warning"},
        )

        assert config.api.api_token_id == "root@pam!pveshape"
        assert config.engine.id_retry_attempts == 3
        assert config.agent.log_level == "WARNING"

    def test_unknown_sections_are_ignored(self):
        """Test extra keys are ignored."""
        config = PveshapeConfig(api=API, metrics={"enabled": True})
        assert not hasattr(config, "metrics")

    def test_api_section_from_environment(self, monkeypatch):
        """Test that the api section may be omitted entirely."""
        monkeypatch.setenv("PVE_API_URL", API["api_url"])
        monkeypatch.setenv("PVE_API_TOKEN_ID", API["api_token_id"])
        monkeypatch.setenv("PVE_API_TOKEN_SECRET", API["api_token_secret"])

        config = PveshapeConfig()

        assert config.api.api_url == API["api_url"]

    def test_missing_api_credentials(self):
        """Test that credentials are required somewhere."""
        with pytest.raises(ValidationError) as exc_info:
            PveshapeConfig()

        assert "api_url" in str(exc_info.value)
