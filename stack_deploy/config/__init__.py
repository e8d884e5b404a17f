"""
Configuration management for stack deployments.

Contains the Pydantic settings (process defaults) and the immutable
DeploymentConfig that is built once per run and handed to every phase.
"""
from stack_deploy.config.settings import Settings, DeploymentConfig, get_settings

__all__ = ["Settings", "DeploymentConfig", "get_settings"]
