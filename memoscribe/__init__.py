"""Top-level package for memoscribe."""

from . import catalog, config, export, jobs, multipart, providers, remote

__all__ = ["catalog", "config", "export", "jobs", "multipart", "providers", "remote"]

__version__ = "0.1.0"
