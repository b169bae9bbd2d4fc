"""Configuration system for devflow.

This package provides type-safe configuration management using Pydantic: the
``devflow.yaml`` workflow file and the ``DEVFLOW_*`` engine settings.

Example:
    >>> from devflow.config import DevFlowConfig
    >>> config = DevFlowConfig.from_yaml("devflow.yaml")
    >>> workflow = config.to_workflow("test", base_dir=".")
"""

from devflow.config.settings import DevFlowConfig, EngineSettings

__all__ = ["DevFlowConfig", "EngineSettings"]
