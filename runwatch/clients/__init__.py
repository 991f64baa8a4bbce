"""Client factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RunwatchConfig, load_config
from .base import BasePipelineClient
from .inmemory import InMemoryPipelineClient


def get_client(
    backend: Optional[str] = None, config: Optional[RunwatchConfig] = None
) -> BasePipelineClient:
    """Factory function to get the configured pipeline client."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("RUNWATCH_BACKEND")
        or config.client.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryPipelineClient()
    elif backend == "azure":
        from .azure import AzureDevOpsClient

        azure_conf = config.client.azure
        if not azure_conf.organization:
            raise ValueError(
                "Azure DevOps organization is not configured "
                "(set client.azure.organization or RUNWATCH_ORGANIZATION)"
            )
        return AzureDevOpsClient(
            organization=azure_conf.organization,
            token=azure_conf.token,
            base_url=azure_conf.base_url,
            api_version=azure_conf.api_version,
            timeout=azure_conf.timeout_seconds,
        )
    else:
        raise ValueError(f"Unsupported client backend: {backend}")


__all__ = ["BasePipelineClient", "InMemoryPipelineClient", "get_client"]
