"""
Provider repositories.

Repositories serve versioned provider release files, either from a remote
release registry or from a stored config object.
"""

from repositories.base import METADATA_FILE, Repository, uses_config_object
from repositories.github import RemoteRegistryRepository
from repositories.memory import ConfigObject, InMemoryRepository

__all__ = [
    "METADATA_FILE",
    "Repository",
    "uses_config_object",
    "RemoteRegistryRepository",
    "ConfigObject",
    "InMemoryRepository",
]
