"""Configuration models."""

import os
from typing import Dict, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


ENV_PREFIX = "PVE_"
FALSE_VALUES = ("0", "false")


class ApiConfig(BaseModel):
    """Connection settings for the Proxmox VE API.

    Any value missing from the file is taken from the matching ``PVE_*``
    environment variable, e.g. ``api_token_id`` from ``PVE_API_TOKEN_ID``.
    """
    api_url: str = Field(..., description="Base URL, e.g. https://pve:8006/api2/json")
    api_token_id: str = Field(..., description="Token id in the form user@realm!token")
    api_token_secret: str = Field(..., description="Token secret UUID")
    tls_insecure: bool = Field(default=False)
    http_headers: Optional[str] = Field(None, description="Extra headers as Key,Value,Key1,Value1")
    timeout: int = Field(default=60, gt=0, description="Seconds to wait for remote tasks")
    debug: bool = Field(default=False)

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def fill_from_environment(cls, data):
        """Take unset values from PVE_* environment variables."""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for name in cls.model_fields:
            if data.get(name) is not None:
                continue
            value = os.environ.get(ENV_PREFIX + name.upper())
            if value is None:
                continue
            if name in ("tls_insecure", "debug"):
                data[name] = value.lower() not in FALSE_VALUES
            else:
                data[name] = value
        return data

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v):
        """Validate API URL."""
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid API URL: {v}")
        return v.rstrip("/")

    @field_validator("api_token_id")
    @classmethod
    def validate_token_id(cls, v):
        """Validate token id format."""
        if "!" not in v:
            raise ValueError(f"API token id must look like user@realm!token, got: {v}")
        return v

    @field_validator("http_headers")
    @classmethod
    def validate_http_headers(cls, v):
        """Validate that headers come in key/value pairs."""
        if v and len(v.split(",")) % 2 != 0:
            raise ValueError("http_headers must be a comma separated list of key/value pairs")
        return v

    def header_map(self) -> Dict[str, str]:
        """Return extra HTTP headers as a dict."""
        if not self.http_headers:
            return {}
        parts = [p.strip() for p in self.http_headers.split(",")]
        return dict(zip(parts[::2], parts[1::2]))

    @property
    def user_id(self) -> str:
        """User part of the token id."""
        return self.api_token_id.split("!", 1)[0]


class EngineConfig(BaseModel):
    """Reconciliation engine tuning."""
    id_retry_attempts: int = Field(default=5, ge=1)
    id_retry_backoff: float = Field(default=0.5, ge=0)
    agent_poll_interval: float = Field(default=2.0, gt=0)
    agent_poll_deadline: float = Field(default=300.0, gt=0)
    task_poll_interval: float = Field(default=1.0, gt=0)
    attachment_strategy: Dict[str, Literal["diff", "config"]] = Field(
        default_factory=lambda: {"qemu": "config", "lxc": "diff"}
    )

    model_config = ConfigDict(extra="ignore")


class AgentConfig(BaseModel):
    """Agent configuration."""
    reconciliation_interval: int = Field(default=60, ge=5)
    log_level: str = Field(default="INFO")
    config_dir: str = Field(default="./configs")
    state_dir: str = Field(default="./state")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class PveshapeConfig(BaseModel):
    """Main configuration model."""
    api: ApiConfig
    engine: EngineConfig = Field(default_factory=EngineConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def default_api_section(cls, data):
        """Allow the api section to come entirely from the environment."""
        if isinstance(data, dict) and data.get("api") is None:
            data = {**data, "api": {}}
        return data
