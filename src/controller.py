"""
Operator Controller - Main reconciliation loop.

Polls the provider store for providers needing a pass, runs the phase
pipeline for each of them and writes the outcome back as status conditions.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from components import SimpleRenderer
from config import ControllerConfig, RegistryConfig
from db import DatabaseManager, ProviderState, provider_from_row
from errors import PhaseError
from installer import InventoryInstaller
from phases import PhaseReconciler, RepositoryFactory
from provider import Provider, mark_false
from provider_config import ProviderConfig
from repositories import RemoteRegistryRepository, Repository

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Each provider pass runs on its own task; the number of concurrent passes
    is bounded by max_concurrent_reconciles.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        config: Optional[ControllerConfig] = None,
        registry_config: Optional[RegistryConfig] = None,
        installer: Optional[InventoryInstaller] = None,
        renderer: Optional[SimpleRenderer] = None,
        repository_factory: Optional[RepositoryFactory] = None,
    ):
        self.db = db_manager
        self.config = config or ControllerConfig()
        self.registry_config = registry_config or RegistryConfig()
        self.installer = installer or InventoryInstaller(db_manager)
        self.renderer = renderer or SimpleRenderer()
        self.repository_factory = repository_factory or self._remote_repository
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False

    async def _remote_repository(
        self, provider_config: ProviderConfig, variables: Dict[str, str]
    ) -> Repository:
        return await RemoteRegistryRepository.create(
            provider_config,
            variables,
            api_base_url=self.registry_config.api_url,
            timeout=self.registry_config.request_timeout,
            token=self.registry_config.token,
        )

    async def start(self):
        """Start the reconciliation and requeue loops."""
        logger.info("Starting Provider Controller")
        self.running = True

        reconcile_task = asyncio.create_task(self._reconciliation_loop())
        requeue_task = asyncio.create_task(self._requeue_loop())

        try:
            await asyncio.gather(reconcile_task, requeue_task)
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        logger.info("Stopping Provider Controller")
        self.running = False

    async def _reconciliation_loop(self):
        """Main reconciliation loop - watches for providers needing a pass."""
        while self.running:
            try:
                rows = await self.db.get_providers_needing_reconciliation(
                    limit=self.max_concurrent_reconciles * 2
                )

                if rows:
                    logger.info(f"Found {len(rows)} providers needing reconciliation")
                    tasks = [self._reconcile_provider(row) for row in rows]
                    await asyncio.gather(*tasks, return_exceptions=True)

                await asyncio.sleep(self.reconcile_interval)

            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                await asyncio.sleep(10)  # Brief pause on error

    async def _requeue_loop(self):
        """Schedules retries of failed providers with exponential backoff."""
        while self.running:
            try:
                await self.db.requeue_failed_providers(
                    base_delay=self.config.backoff_base_delay,
                    max_delay=self.config.backoff_max_delay,
                    jitter_factor=self.config.backoff_jitter_factor,
                )
                await asyncio.sleep(30)
            except Exception as e:
                logger.error(f"Error in requeue loop: {e}", exc_info=True)
                await asyncio.sleep(10)

    def new_phase_reconciler(
        self, provider: Provider, provider_list: List[Provider]
    ) -> PhaseReconciler:
        return PhaseReconciler(
            provider=provider,
            provider_list=provider_list,
            store=self.db,
            installer=self.installer,
            records=self.installer,
            renderer=self.renderer,
            repository_factory=self.repository_factory,
            install_timeout=self.config.install_timeout,
            core_provider_wait=self.config.core_provider_wait,
        )

    async def _reconcile_provider(self, row: Dict[str, Any]):
        """Run one pipeline pass for a provider row and record the outcome."""
        async with self.semaphore:
            provider = provider_from_row(row)
            ref = f"{provider.kind.value} {provider.namespace}/{provider.name}"
            start_time = time.monotonic()

            try:
                await self.db.mark_provider_reconciling(provider.id, provider.generation)
                provider_list = [
                    provider_from_row(r) for r in await self.db.list_providers()
                ]

                reconciler = self.new_phase_reconciler(provider, provider_list)
                if provider.deleting:
                    phases = reconciler.delete_phases()
                else:
                    phases = reconciler.reconcile_phases()

                result = await reconciler.run(phases)

            except PhaseError as e:
                mark_false(provider, e.condition_type, e.reason, str(e), e.severity)
                await self.db.update_provider_status(
                    provider.id,
                    ProviderState.FAILED,
                    provider.status.model_dump(mode="json"),
                    message=f"{e.reason}: {e}",
                    park=not e.retryable,
                )
                if e.retryable:
                    logger.error(f"Failed to reconcile {ref}: {e.reason}: {e}")
                else:
                    logger.error(
                        f"Failed to reconcile {ref}: {e.reason}: {e}; "
                        f"waiting for a spec change"
                    )
                return

            except Exception as e:
                logger.error(f"Error reconciling {ref}: {e}", exc_info=True)
                await self.db.update_provider_status(
                    provider.id,
                    ProviderState.FAILED,
                    provider.status.model_dump(mode="json"),
                    message=f"Reconciliation error: {str(e)}",
                )
                return

            duration = time.monotonic() - start_time

            if provider.deleting:
                await self.db.hard_delete_provider(provider.id)
                logger.info(f"Deleted {ref} in {duration:.1f}s")
                return

            if result.requeue:
                await self.db.update_provider_status(
                    provider.id,
                    ProviderState.WAITING,
                    provider.status.model_dump(mode="json"),
                    message="Waiting for the core provider",
                    requeue_after=result.requeue_after,
                )
                return

            if reconciler.pinned_version:
                await self.db.pin_provider_version(
                    provider.id, reconciler.pinned_version, provider.generation
                )

            await self.db.update_provider_status(
                provider.id,
                ProviderState.READY,
                provider.status.model_dump(mode="json"),
                message=f"Installed version {provider.spec.version}",
            )
            logger.info(f"Successfully reconciled {ref} in {duration:.1f}s")

    async def trigger_reconciliation(self, provider_id: int):
        """Manually trigger reconciliation for a specific provider."""
        logger.info(f"Manually triggering reconciliation for provider {provider_id}")
        await self.db.mark_provider_for_reconciliation(provider_id)
