"""
Installer - applies provider components to the target environment.

The target environment is the operator's own PostgreSQL inventory: every
rendered object is stored against the provider record that owns it, and the
record carries the installed version used for upgrade detection.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from components import CRD_KIND, NAMESPACE_KIND, ComponentSet
from errors import DeletionError, InstallError, NotFoundError
from provider import ProviderIdentity, identity_for

logger = logging.getLogger(__name__)


@dataclass
class ProviderRecord:
    """Inventory entry describing what is installed for a provider."""

    name: str
    namespace: str
    provider_name: str
    type: str
    version: Optional[str] = None

    @property
    def identity(self) -> ProviderIdentity:
        return ProviderIdentity(name=self.name, namespace=self.namespace)


class Installer(ABC):
    """Applies and removes provider components."""

    @abstractmethod
    async def ensure_prerequisites(self) -> None:
        """Make sure the inventory can be written."""
        pass

    @abstractmethod
    async def install(self, components: ComponentSet) -> None:
        """Apply a component set and record the installed version."""
        pass

    @abstractmethod
    async def delete(
        self,
        record: ProviderRecord,
        include_namespace: bool = False,
        include_crds: bool = False,
    ) -> None:
        """Remove the objects installed for a provider record."""
        pass


class ProviderRecordStore(ABC):
    """Read access to provider records."""

    @abstractmethod
    async def get(self, identity: ProviderIdentity) -> ProviderRecord:
        """
        Get the record for an identity.

        Raises:
            NotFoundError: If no record exists.
        """
        pass


def _object_key(obj: Dict[str, Any]) -> Dict[str, str]:
    metadata = obj.get("metadata") or {}
    return {
        "api_version": obj.get("apiVersion", ""),
        "kind": obj.get("kind", ""),
        "object_namespace": metadata.get("namespace") or "",
        "object_name": metadata.get("name") or "",
    }


class InventoryInstaller(Installer, ProviderRecordStore):
    """Installer and record store backed by the inventory tables."""

    def __init__(self, db):
        self.db = db

    async def ensure_prerequisites(self) -> None:
        await self.db.ensure_inventory_schema()

    async def install(self, components: ComponentSet) -> None:
        identity = identity_for(
            components.provider_kind,
            components.provider_name,
            components.target_namespace,
        )
        objects = []
        for obj in components.objects:
            key = _object_key(obj)
            if not key["object_name"]:
                raise InstallError(
                    f"{key['kind']} object in components of "
                    f"{components.manifest_label} has no name"
                )
            objects.append({**key, "body": obj})

        try:
            await self.db.install_components(
                record_name=identity.name,
                namespace=identity.namespace,
                provider_name=components.provider_name,
                provider_type=components.provider_kind.value,
                version=components.version,
                objects=objects,
            )
        except Exception as e:
            raise InstallError(
                f"failed to install {components.manifest_label} "
                f"{components.version}: {e}"
            ) from e

        logger.info(
            f"Installed {len(objects)} objects for {identity.namespace}/{identity.name} "
            f"at version {components.version}"
        )

    async def delete(
        self,
        record: ProviderRecord,
        include_namespace: bool = False,
        include_crds: bool = False,
    ) -> None:
        keep_kinds: List[str] = []
        if not include_namespace:
            keep_kinds.append(NAMESPACE_KIND)
        if not include_crds:
            keep_kinds.append(CRD_KIND)

        try:
            deleted = await self.db.delete_components(
                record_name=record.name,
                namespace=record.namespace,
                keep_kinds=keep_kinds,
            )
        except Exception as e:
            raise DeletionError(
                f"failed to delete components of {record.namespace}/{record.name} "
                f"version {record.version}: {e}"
            ) from e

        logger.info(
            f"Deleted {deleted} objects of {record.namespace}/{record.name} "
            f"(version {record.version}, kept kinds: {keep_kinds or 'none'})"
        )

    async def get(self, identity: ProviderIdentity) -> ProviderRecord:
        row = await self.db.get_provider_record(identity.name, identity.namespace)
        if row is None:
            raise NotFoundError(
                f"provider record {identity.namespace}/{identity.name} not found"
            )
        return ProviderRecord(
            name=row["name"],
            namespace=row["namespace"],
            provider_name=row["provider_name"],
            type=row["type"],
            version=row.get("version"),
        )
