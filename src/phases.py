"""
Phase reconciler - the provider install/upgrade/delete pipeline.

A pass runs an ordered list of phases over shared reconciler state:

    preflight_checks -> load -> fetch -> pre_install -> install

or just ``delete`` for a provider being removed. Every phase either returns a
PhaseResult or raises a PhaseError carrying the condition type and reason the
controller surfaces on the provider's status.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from components import (
    ComponentsOptions,
    ComponentSet,
    SimpleRenderer,
    customize_objects_fn,
)
from compatibility import resolve_contract
from errors import (
    ComponentsFetchError,
    InstallTimeoutError,
    NotFoundError,
    PhaseError,
    ProviderValidationError,
    RepositoryError,
)
from installer import Installer, ProviderRecord, ProviderRecordStore
from preflight import DEFAULT_CORE_PROVIDER_WAIT, run_preflight_checks
from provider import (
    CAPI_VERSION_INCOMPATIBILITY_REASON,
    COMPONENTS_FETCH_ERROR_REASON,
    OLD_COMPONENTS_DELETION_ERROR_REASON,
    PREFLIGHT_CHECK_CONDITION,
    PROVIDER_INSTALLED_CONDITION,
    UNKNOWN_PROVIDER_REASON,
    Provider,
    ProviderIdentity,
    identity_for,
    mark_true,
)
from provider_config import ConfigClient, ProviderConfig, VariablesReader
from repositories import (
    METADATA_FILE,
    InMemoryRepository,
    RemoteRegistryRepository,
    Repository,
    uses_config_object,
)
from repositories.memory import parse_selector
from versions import less_than, parse_semantic

logger = logging.getLogger(__name__)

SECRET_READER_REASON = "failed to load the secret reader"
REPOSITORY_REASON = "failed to load the repository"
PREREQUISITES_REASON = "failed installing inventory prerequisites"
PROVIDER_RECORD_REASON = "failed getting provider record"
INSTALL_TIMEOUT_REASON = "Timed out waiting for deployment to become ready"
INSTALL_FAILED_REASON = "Install failed"

DEFAULT_INSTALL_TIMEOUT = 300.0

RepositoryFactory = Callable[[ProviderConfig, Dict[str, str]], Awaitable[Repository]]
Phase = Callable[[], Awaitable["PhaseResult"]]


@dataclass
class PhaseResult:
    """Outcome of a successful phase; requeue_after stops the pass early."""

    requeue_after: Optional[float] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


class PhaseReconciler:
    """
    Holds the state of one reconciliation pass for one provider.

    Args:
        provider: The provider being reconciled; conditions, status and a
            pinned version are written onto it in place
        provider_list: Every stored provider, used by preflight checks
        store: Source of secrets and config objects
        installer: Applies and removes components
        records: Reads provider records
        renderer: Turns raw manifests into a ComponentSet
        repository_factory: Builds the remote repository for a provider
        install_timeout: Deadline in seconds for a single install
        core_provider_wait: Requeue delay while the core provider is not ready
    """

    def __init__(
        self,
        provider: Provider,
        provider_list: List[Provider],
        store,
        installer: Installer,
        records: ProviderRecordStore,
        renderer: Optional[SimpleRenderer] = None,
        repository_factory: Optional[RepositoryFactory] = None,
        install_timeout: float = DEFAULT_INSTALL_TIMEOUT,
        core_provider_wait: float = DEFAULT_CORE_PROVIDER_WAIT,
    ):
        self.provider = provider
        self.provider_list = provider_list
        self.store = store
        self.installer = installer
        self.records = records
        self.renderer = renderer or SimpleRenderer()
        self.repository_factory = repository_factory or RemoteRegistryRepository.create
        self.install_timeout = install_timeout
        self.core_provider_wait = core_provider_wait

        self.repo: Optional[Repository] = None
        self.options: Optional[ComponentsOptions] = None
        self.contract: Optional[str] = None
        self.provider_config: Optional[ProviderConfig] = None
        self.config_client: Optional[ConfigClient] = None
        self.components: Optional[ComponentSet] = None
        self.record: Optional[ProviderRecord] = None
        # Set when install pinned spec.version; written back without a generation bump
        self.pinned_version: Optional[str] = None

    @property
    def identity(self) -> ProviderIdentity:
        return identity_for(
            self.provider.kind, self.provider.name, self.provider.namespace
        )

    def reconcile_phases(self) -> List[Phase]:
        return [
            self.preflight_checks,
            self.load,
            self.fetch,
            self.pre_install,
            self.install,
        ]

    def delete_phases(self) -> List[Phase]:
        return [self.delete]

    async def run(self, phases: List[Phase]) -> PhaseResult:
        """Run phases in order, stopping at the first requeue."""
        for phase in phases:
            result = await phase()
            if result.requeue:
                return result
        return PhaseResult()

    # Phases

    async def preflight_checks(self) -> PhaseResult:
        requeue_after = run_preflight_checks(
            self.provider, self.provider_list, self.core_provider_wait
        )
        return PhaseResult(requeue_after=requeue_after)

    async def load(self) -> PhaseResult:
        """Resolve configuration, select the repository and check the contract."""
        logger.debug(f"Loading provider {self.provider.namespace}/{self.provider.name}")

        try:
            reader = await self.secret_reader()
        except Exception as e:
            raise PhaseError(e, SECRET_READER_REASON, PREFLIGHT_CHECK_CONDITION) from e

        self.config_client = ConfigClient(reader)

        try:
            self.provider_config = self.config_client.get_provider(
                self.provider.name, self.provider.kind
            )
        except Exception as e:
            raise PhaseError(
                e, UNKNOWN_PROVIDER_REASON, PREFLIGHT_CHECK_CONDITION
            ) from e

        fetch_config = self.provider.spec.fetch_config
        try:
            if uses_config_object(fetch_config):
                logger.debug(
                    f"Using a config object to fetch manifests for "
                    f"{self.provider_config.manifest_label}"
                )
                self.repo = await self.config_object_repository()
            else:
                self.repo = await self.repository_factory(
                    self.provider_config, self.config_client.variables()
                )
        except Exception as e:
            raise PhaseError(e, REPOSITORY_REASON, PREFLIGHT_CHECK_CONDITION) from e

        self.options = ComponentsOptions(
            target_namespace=self.provider.namespace,
            version=self.provider.spec.version or self.repo.default_version,
        )

        try:
            await self.validate_repo_contract()
        except Exception as e:
            raise PhaseError(
                e, CAPI_VERSION_INCOMPATIBILITY_REASON, PREFLIGHT_CHECK_CONDITION
            ) from e

        return PhaseResult()

    async def fetch(self) -> PhaseResult:
        """Download, render and customize the provider components."""
        label = self.provider_config.manifest_label
        path = self.repo.components_path
        logger.debug(f"Fetching {path} for {label} {self.options.version}")

        try:
            raw = await self.repo.get_file(self.options.version, path)
        except Exception as e:
            raise PhaseError(
                ComponentsFetchError(
                    f"failed to read {path!r} from provider's repository {label!r}: {e}"
                ),
                COMPONENTS_FETCH_ERROR_REASON,
                PREFLIGHT_CHECK_CONDITION,
            ) from e

        try:
            components = self.renderer.render(
                raw,
                self.options,
                self.provider_config,
                self.config_client.variables(),
                manifest_path=path,
            )
            self.components = components.altered(customize_objects_fn(self.provider))
        except Exception as e:
            raise PhaseError(
                e, COMPONENTS_FETCH_ERROR_REASON, PREFLIGHT_CHECK_CONDITION
            ) from e

        mark_true(self.provider, PREFLIGHT_CHECK_CONDITION)
        return PhaseResult()

    async def pre_install(self) -> PhaseResult:
        """Ensure the inventory exists and remove old components on upgrade."""
        try:
            await self.installer.ensure_prerequisites()
        except Exception as e:
            raise PhaseError(
                e, PREREQUISITES_REASON, PROVIDER_INSTALLED_CONDITION
            ) from e

        try:
            needs_pre_delete = await self.update_requires_pre_deletion()
        except Exception as e:
            raise PhaseError(
                e, PROVIDER_RECORD_REASON, PROVIDER_INSTALLED_CONDITION
            ) from e

        if not needs_pre_delete:
            return PhaseResult()

        logger.info(
            f"Upgrading {self.identity.namespace}/{self.identity.name} from "
            f"{self.record.version} to {self.components.version}, "
            f"deleting old components"
        )
        return await self.delete()

    async def install(self) -> PhaseResult:
        logger.info(
            f"Installing {self.components.manifest_label} {self.components.version} "
            f"into {self.components.target_namespace}"
        )
        try:
            await asyncio.wait_for(
                self.installer.install(self.components), timeout=self.install_timeout
            )
        except InstallTimeoutError as e:
            raise PhaseError(
                e, INSTALL_TIMEOUT_REASON, PROVIDER_INSTALLED_CONDITION
            ) from e
        except asyncio.TimeoutError as e:
            raise PhaseError(
                InstallTimeoutError(
                    f"install of {self.components.manifest_label} did not finish "
                    f"within {self.install_timeout}s"
                ),
                INSTALL_TIMEOUT_REASON,
                PROVIDER_INSTALLED_CONDITION,
            ) from e
        except Exception as e:
            raise PhaseError(
                e, INSTALL_FAILED_REASON, PROVIDER_INSTALLED_CONDITION
            ) from e

        spec = self.provider.spec
        if not spec.version:
            spec.version = self.components.version
            self.pinned_version = self.components.version

        status = self.provider.status
        status.contract = self.contract
        status.observed_generation = self.provider.generation

        mark_true(self.provider, PROVIDER_INSTALLED_CONDITION)
        logger.info(
            f"Provider {self.provider.namespace}/{self.provider.name} installed "
            f"at {self.components.version}"
        )
        return PhaseResult()

    async def delete(self) -> PhaseResult:
        """Delete the provider's components, keeping its namespace and CRDs."""
        identity = self.identity
        version = self.record.version if self.record is not None else None
        if not version:
            # No usable record, e.g. a failed first install
            version = self.options.version if self.options else self.provider.spec.version

        record = ProviderRecord(
            name=identity.name,
            namespace=identity.namespace,
            provider_name=self.provider.name,
            type=self.provider.kind.value,
            version=version,
        )

        logger.info(f"Deleting provider {identity.namespace}/{identity.name} {version}")
        try:
            await self.installer.delete(
                record, include_namespace=False, include_crds=False
            )
        except Exception as e:
            raise PhaseError(
                e, OLD_COMPONENTS_DELETION_ERROR_REASON, PROVIDER_INSTALLED_CONDITION
            ) from e

        return PhaseResult()

    # Helpers

    async def secret_reader(self) -> VariablesReader:
        """
        Build the variables reader from the provider's secret and fetch URL.

        Raises:
            NotFoundError: If the referenced secret does not exist.
        """
        reader = VariablesReader()
        spec = self.provider.spec

        if spec.secret_name:
            namespace = spec.secret_namespace or self.provider.namespace
            data = await self.store.get_secret(namespace, spec.secret_name)
            if data is None:
                raise NotFoundError(f"secret {namespace}/{spec.secret_name} not found")
            for key, value in data.items():
                reader.set(key, value)
        else:
            logger.debug(
                f"No configuration secret for provider {self.provider.name}"
            )

        fetch_config = spec.fetch_config
        if fetch_config is not None and fetch_config.url:
            logger.debug(
                f"Custom fetch url for provider {self.provider.name}: {fetch_config.url}"
            )
            reader.add_provider(self.provider.name, self.provider.kind, fetch_config.url)

        return reader

    async def config_object_repository(self) -> InMemoryRepository:
        """
        Build an in-memory repository from the referenced or selected config object.

        Raises:
            NotFoundError: If the object does not exist or no object matches.
            RepositoryError: If more than one object matches the labels.
            ProviderValidationError: If the selector cannot be parsed.
        """
        fetch_config = self.provider.spec.fetch_config
        if fetch_config.config_map is not None:
            ref = fetch_config.config_map
            namespace = ref.namespace or self.provider.namespace
            config_object = await self.store.get_config_object(namespace, ref.name)
            return InMemoryRepository.from_config_object(
                config_object, f"{namespace}/{ref.name}"
            )

        if fetch_config.match_labels:
            labels = dict(fetch_config.match_labels)
        else:
            try:
                labels = parse_selector(fetch_config.selector)
            except ValueError as e:
                raise ProviderValidationError(
                    f"spec.fetch_config.selector: {e}"
                ) from e

        matches = await self.store.list_config_objects(self.provider.namespace, labels)
        if not matches:
            raise NotFoundError(
                f"no config object in namespace {self.provider.namespace} "
                f"matches labels {labels}"
            )
        if len(matches) > 1:
            names = ", ".join(sorted(m.name for m in matches))
            raise RepositoryError(
                f"more than one config object in namespace {self.provider.namespace} "
                f"matches labels {labels}: {names}"
            )
        return InMemoryRepository.from_config_object(matches[0])

    async def validate_repo_contract(self) -> None:
        """Resolve the contract of the target version from metadata.yaml."""
        name = self.provider.name
        try:
            metadata = await self.repo.get_file(self.options.version, METADATA_FILE)
        except Exception as e:
            raise RepositoryError(
                f"failed to read {METADATA_FILE!r} from the repository for "
                f"provider {name!r}: {e}"
            ) from e

        self.contract = resolve_contract(metadata, self.options.version, name)

    async def update_requires_pre_deletion(self) -> bool:
        """
        True only when the recorded version is strictly older than the new one.

        A missing record, or a record without a version, means a fresh install.
        """
        try:
            self.record = await self.records.get(self.identity)
        except NotFoundError:
            return False

        if not self.record.version:
            return False

        next_version = parse_semantic(self.components.version)
        current_version = parse_semantic(self.record.version)
        return less_than(current_version, next_version)
