"""Configuration models and loaders."""

from .config import Config, HostConfig, LoggingConfig, StateConfig, WorkerConfig

__all__ = ['Config', 'HostConfig', 'LoggingConfig', 'StateConfig', 'WorkerConfig']
