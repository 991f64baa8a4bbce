from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class AzureConfig(BaseModel):
    """Connection settings for Azure DevOps."""

    organization: Optional[str] = None
    token: Optional[str] = None
    base_url: str = "https://dev.azure.com"
    api_version: str = "7.1"
    timeout_seconds: float = Field(default=30.0, gt=0)


class ClientConfig(BaseModel):
    """Remote service client settings."""

    backend: Literal["azure", "inmemory"] = "azure"
    azure: AzureConfig = Field(default_factory=AzureConfig)


class PollingConfig(BaseModel):
    """Background refresh settings."""

    enabled: bool = True
    interval_seconds: float = Field(default=5.0, gt=0)


class RunwatchConfig(BaseModel):
    """Top-level configuration model."""

    client: ClientConfig = Field(default_factory=ClientConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    page_size: int = Field(default=5, ge=1)
    action_refresh_delay: float = Field(default=2.0, ge=0)
    log_level: str = "INFO"


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_config(path: Optional[str] = None) -> RunwatchConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to RUNWATCH_CONFIG env
            variable or 'runwatch.yaml' in the current directory.
    """

    config_path = path or os.getenv("RUNWATCH_CONFIG", "runwatch.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RunwatchConfig(**data)
    else:
        config = RunwatchConfig()

    backend = os.getenv("RUNWATCH_BACKEND")
    if backend:
        config.client.backend = backend.lower()
    organization = os.getenv("RUNWATCH_ORGANIZATION")
    if organization:
        config.client.azure.organization = organization
    token = os.getenv("RUNWATCH_TOKEN") or os.getenv("AZURE_DEVOPS_EXT_PAT")
    if token:
        config.client.azure.token = token
    polling_enabled = os.getenv("RUNWATCH_POLLING_ENABLED")
    if polling_enabled:
        config.polling.enabled = _env_flag(polling_enabled)
    interval = os.getenv("RUNWATCH_POLLING_INTERVAL")
    if interval:
        config.polling = PollingConfig(
            enabled=config.polling.enabled, interval_seconds=float(interval)
        )
    return config
