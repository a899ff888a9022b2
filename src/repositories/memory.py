"""
In-memory repository backed by a stored config object.

This is the "air-gapped" source: an operator stores the provider's metadata
and components in a config object instead of pulling them from a remote
registry.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from errors import InvalidVersionError, MissingKeyError, NotFoundError
from repositories.base import METADATA_FILE, Repository
from versions import parse_semantic

logger = logging.getLogger(__name__)

VERSION_LABEL = "cluster.x-k8s.io/version"
DEFAULT_COMPONENTS_PATH = "components.yaml"

METADATA_KEY = "metadata"
COMPONENTS_KEY = "components"


@dataclass
class ConfigObject:
    """A named key/value object stored alongside providers."""

    name: str
    namespace: str
    data: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


class InMemoryRepository(Repository):
    """Repository serving files from memory."""

    def __init__(self, components_path: str = DEFAULT_COMPONENTS_PATH):
        self._components_path = components_path
        self._files: Dict[Tuple[str, str], bytes] = {}
        self._version: Optional[str] = None

    @property
    def default_version(self) -> str:
        return self._version or ""

    @property
    def components_path(self) -> str:
        return self._components_path

    def with_file(self, version: str, path: str, content: bytes) -> "InMemoryRepository":
        """Add a file for a version. Returns self for chaining."""
        self._files[(version, path)] = content
        self._version = version
        return self

    async def get_file(self, version: str, path: str) -> bytes:
        try:
            return self._files[(version, path)]
        except KeyError:
            raise NotFoundError(
                f"file {path!r} for version {version!r} not found in memory repository"
            )

    @classmethod
    def from_config_object(
        cls, config_object: Optional[ConfigObject], reference: str = ""
    ) -> "InMemoryRepository":
        """
        Build a repository from a config object.

        The version comes from the version label, falling back to the
        object's name. The object must hold both metadata and components.

        Args:
            config_object: The stored object, or None if the lookup failed
            reference: "namespace/name" used in the not-found message

        Raises:
            NotFoundError: If config_object is None.
            InvalidVersionError: If the derived version is not semantic.
            MissingKeyError: If metadata or components is absent.
        """
        if config_object is None:
            raise NotFoundError(f"config object {reference} not found")

        ref = f"{config_object.namespace}/{config_object.name}"
        version = config_object.name
        source = "from the Name"
        if VERSION_LABEL in config_object.labels:
            version = config_object.labels[VERSION_LABEL]
            source = f"from the Label {VERSION_LABEL}"

        try:
            parse_semantic(version)
        except InvalidVersionError:
            raise InvalidVersionError(
                f"config object {ref} has invalid version:{version} ({source})"
            )

        if METADATA_KEY not in config_object.data:
            raise MissingKeyError(METADATA_KEY, f"config object {ref} has no metadata")
        if COMPONENTS_KEY not in config_object.data:
            raise MissingKeyError(
                COMPONENTS_KEY, f"config object {ref} has no components"
            )

        repo = cls()
        repo.with_file(
            version, METADATA_FILE, config_object.data[METADATA_KEY].encode("utf-8")
        )
        repo.with_file(
            version,
            repo.components_path,
            config_object.data[COMPONENTS_KEY].encode("utf-8"),
        )
        logger.debug(f"Loaded config object {ref} as version {version}")
        return repo


def parse_selector(selector: Optional[str]) -> Dict[str, str]:
    """
    Parse an equality-based label selector ("a=b,c==d") into a label map.

    Raises:
        ValueError: If a term is not of the form key=value, or a non-empty
            selector holds no terms.
    """
    labels: Dict[str, str] = {}
    if not selector:
        return labels
    for term in selector.split(","):
        term = term.strip()
        if not term:
            continue
        if "==" in term:
            key, value = term.split("==", 1)
        elif "=" in term and "!=" not in term:
            key, value = term.split("=", 1)
        else:
            raise ValueError(f"unsupported selector term {term!r}")
        key, value = key.strip(), value.strip()
        if not key:
            raise ValueError(f"unsupported selector term {term!r}")
        labels[key] = value
    if not labels:
        raise ValueError("empty selector")
    return labels
