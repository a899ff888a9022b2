"""
Repository Base - Abstract interface for provider manifest sources.

A repository serves the files of a provider release (metadata and
components) for a given version. Two sources are supported: a remote release
registry and an in-memory repository backed by a stored config object.
"""

from abc import ABC, abstractmethod
from typing import Optional

from provider import FetchConfig

METADATA_FILE = "metadata.yaml"


class Repository(ABC):
    """Abstract base class for provider repositories."""

    @property
    @abstractmethod
    def default_version(self) -> str:
        """Version used when the provider does not pin one."""
        pass

    @property
    @abstractmethod
    def components_path(self) -> str:
        """Path of the components file within a release."""
        pass

    @abstractmethod
    async def get_file(self, version: str, path: str) -> bytes:
        """
        Get the content of a release file.

        Args:
            version: The release version
            path: The file path within the release

        Returns:
            The raw file content.

        Raises:
            NotFoundError: If the version or file does not exist.
            RepositoryError: If the repository could not be read.
        """
        pass


def uses_config_object(fetch_config: Optional[FetchConfig]) -> bool:
    """Return True if manifests come from a stored config object."""
    if fetch_config is None:
        return False
    return bool(
        fetch_config.config_map is not None
        or fetch_config.selector
        or fetch_config.match_labels
    )
