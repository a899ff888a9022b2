"""Unit tests for controller.py - Main reconciliation controller."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from config import ControllerConfig, RegistryConfig
from controller import Controller
from db import ProviderState
from errors import PhaseError, ProviderValidationError, RepositoryError
from installer import InventoryInstaller
from phases import REPOSITORY_REASON, PhaseResult
from provider import (
    FETCH_CONFIG_VALIDATION_ERROR_REASON,
    PREFLIGHT_CHECK_CONDITION,
    PROVIDER_INSTALLED_CONDITION,
    ProviderKind,
)
from provider_config import ProviderConfig
from repositories import METADATA_FILE, InMemoryRepository


@pytest.fixture
def mock_db(sample_provider_row, core_provider_row):
    """Create a mock database manager."""
    db = AsyncMock()
    db.get_providers_needing_reconciliation = AsyncMock(return_value=[])
    db.list_providers = AsyncMock(return_value=[sample_provider_row, core_provider_row])
    db.update_provider_status = AsyncMock()
    db.mark_provider_reconciling = AsyncMock()
    db.mark_provider_for_reconciliation = AsyncMock()
    db.pin_provider_version = AsyncMock(return_value=True)
    db.hard_delete_provider = AsyncMock(return_value=True)
    db.requeue_failed_providers = AsyncMock()
    return db


@pytest.fixture
def controller(mock_db):
    """Create a controller for testing."""
    config = ControllerConfig(reconcile_interval=1, max_concurrent_reconciles=2)
    return Controller(db_manager=mock_db, config=config)


def stub_reconciler(result=None, error=None, pinned_version=None):
    reconciler = MagicMock()
    reconciler.run = AsyncMock(return_value=result or PhaseResult(), side_effect=error)
    reconciler.pinned_version = pinned_version
    return reconciler


class TestController:
    """Tests for Controller construction."""

    def test_init(self, controller, mock_db):
        assert controller.db is mock_db
        assert controller.reconcile_interval == 1
        assert controller.max_concurrent_reconciles == 2
        assert controller.running is False
        assert isinstance(controller.installer, InventoryInstaller)

    def test_init_default_config(self, mock_db):
        controller = Controller(db_manager=mock_db)
        assert controller.reconcile_interval == 60
        assert controller.max_concurrent_reconciles == 5

    def test_new_phase_reconciler_uses_config(self, mock_db):
        config = ControllerConfig(install_timeout=12.0, core_provider_wait=3.0)
        controller = Controller(db_manager=mock_db, config=config)
        reconciler = controller.new_phase_reconciler(MagicMock(), [])
        assert reconciler.install_timeout == 12.0
        assert reconciler.core_provider_wait == 3.0
        assert reconciler.store is mock_db
        assert reconciler.records is controller.installer


@pytest.mark.asyncio
class TestControllerAsync:
    """Async tests for Controller."""

    async def test_stop(self, controller):
        controller.running = True
        await controller.stop()
        assert controller.running is False

    async def test_trigger_reconciliation(self, controller, mock_db):
        await controller.trigger_reconciliation(1)
        mock_db.mark_provider_for_reconciliation.assert_called_once_with(1)

    async def test_remote_repository_uses_registry_config(self, mock_db):
        controller = Controller(
            db_manager=mock_db,
            registry_config=RegistryConfig(
                api_url="https://ghe.example.com/api/v3", token="t", request_timeout=5
            ),
        )
        provider_config = ProviderConfig("aws", ProviderKind.INFRASTRUCTURE, "https://x")
        with patch(
            "controller.RemoteRegistryRepository.create", new=AsyncMock()
        ) as create:
            await controller._remote_repository(provider_config, {"A": "1"})
        create.assert_awaited_once_with(
            provider_config,
            {"A": "1"},
            api_base_url="https://ghe.example.com/api/v3",
            timeout=5,
            token="t",
        )

    async def test_successful_pass_marks_ready_and_pins(
        self, controller, mock_db, sample_provider_row
    ):
        reconciler = stub_reconciler(pinned_version="v2.0.0")
        with patch.object(controller, "new_phase_reconciler", return_value=reconciler):
            await controller._reconcile_provider(sample_provider_row)

        mock_db.mark_provider_reconciling.assert_awaited_once_with(1, 1)
        reconciler.reconcile_phases.assert_called_once()
        mock_db.pin_provider_version.assert_awaited_once_with(1, "v2.0.0", 1)
        args = mock_db.update_provider_status.await_args
        assert args[0][0] == 1
        assert args[0][1] == ProviderState.READY

    async def test_provider_list_passed_to_reconciler(
        self, controller, sample_provider_row
    ):
        reconciler = stub_reconciler()
        with patch.object(
            controller, "new_phase_reconciler", return_value=reconciler
        ) as factory:
            await controller._reconcile_provider(sample_provider_row)
        provider, provider_list = factory.call_args[0]
        assert provider.name == "aws"
        assert {p.kind for p in provider_list} == {
            ProviderKind.INFRASTRUCTURE,
            ProviderKind.CORE,
        }

    async def test_no_pin_when_version_set(self, controller, mock_db, sample_provider_row):
        with patch.object(controller, "new_phase_reconciler", return_value=stub_reconciler()):
            await controller._reconcile_provider(sample_provider_row)
        mock_db.pin_provider_version.assert_not_awaited()

    async def test_requeue_marks_waiting(self, controller, mock_db, sample_provider_row):
        reconciler = stub_reconciler(result=PhaseResult(requeue_after=30.0))
        with patch.object(controller, "new_phase_reconciler", return_value=reconciler):
            await controller._reconcile_provider(sample_provider_row)

        args = mock_db.update_provider_status.await_args
        assert args[0][1] == ProviderState.WAITING
        assert args.kwargs["requeue_after"] == 30.0

    async def test_retryable_phase_error(self, controller, mock_db, sample_provider_row):
        error = PhaseError(RepositoryError("registry down"), REPOSITORY_REASON, PREFLIGHT_CHECK_CONDITION)
        with patch.object(
            controller, "new_phase_reconciler", return_value=stub_reconciler(error=error)
        ):
            await controller._reconcile_provider(sample_provider_row)

        args = mock_db.update_provider_status.await_args
        assert args[0][1] == ProviderState.FAILED
        assert args.kwargs["park"] is False
        assert args.kwargs["message"] == f"{REPOSITORY_REASON}: registry down"
        status = args[0][2]
        condition = next(c for c in status["conditions"] if c["type"] == PREFLIGHT_CHECK_CONDITION)
        assert condition["status"] == "False"
        assert condition["reason"] == REPOSITORY_REASON

    async def test_validation_error_parks_provider(
        self, controller, mock_db, sample_provider_row
    ):
        error = PhaseError(
            ProviderValidationError("bad selector"),
            FETCH_CONFIG_VALIDATION_ERROR_REASON,
            PREFLIGHT_CHECK_CONDITION,
        )
        with patch.object(
            controller, "new_phase_reconciler", return_value=stub_reconciler(error=error)
        ):
            await controller._reconcile_provider(sample_provider_row)

        assert mock_db.update_provider_status.await_args.kwargs["park"] is True

    async def test_unexpected_error(self, controller, mock_db, sample_provider_row):
        reconciler = stub_reconciler(error=RuntimeError("boom"))
        with patch.object(controller, "new_phase_reconciler", return_value=reconciler):
            await controller._reconcile_provider(sample_provider_row)

        args = mock_db.update_provider_status.await_args
        assert args[0][1] == ProviderState.FAILED
        assert "boom" in args.kwargs["message"]

    async def test_deleting_provider_runs_delete_phases(
        self, controller, mock_db, sample_provider_row
    ):
        sample_provider_row["deleted_at"] = sample_provider_row["created_at"]
        reconciler = stub_reconciler()
        with patch.object(controller, "new_phase_reconciler", return_value=reconciler):
            await controller._reconcile_provider(sample_provider_row)

        reconciler.delete_phases.assert_called_once()
        reconciler.reconcile_phases.assert_not_called()
        mock_db.hard_delete_provider.assert_awaited_once_with(1)
        mock_db.update_provider_status.assert_not_awaited()

    async def test_failed_delete_keeps_row(self, controller, mock_db, sample_provider_row):
        sample_provider_row["deleted_at"] = sample_provider_row["created_at"]
        error = PhaseError(RuntimeError("locked"), "OldComponentsDeletionError", PROVIDER_INSTALLED_CONDITION)
        with patch.object(
            controller, "new_phase_reconciler", return_value=stub_reconciler(error=error)
        ):
            await controller._reconcile_provider(sample_provider_row)

        mock_db.hard_delete_provider.assert_not_awaited()
        assert mock_db.update_provider_status.await_args[0][1] == ProviderState.FAILED

    async def test_full_pipeline_with_config_object_free_repository(
        self, mock_db, sample_provider_row, metadata_yaml, components_yaml
    ):
        sample_provider_row["spec"] = {"secret_name": "aws-variables"}
        mock_db.get_secret = AsyncMock(return_value={"AWS_REGION": "eu-west-1"})
        mock_db.get_provider_record = AsyncMock(return_value=None)

        repo = (
            InMemoryRepository(components_path="infrastructure-components.yaml")
            .with_file("v1.5.0", METADATA_FILE, metadata_yaml.encode())
            .with_file("v1.5.0", "infrastructure-components.yaml", components_yaml.encode())
        )
        controller = Controller(
            db_manager=mock_db, repository_factory=AsyncMock(return_value=repo)
        )

        await controller._reconcile_provider(sample_provider_row)

        mock_db.install_components.assert_awaited_once()
        assert mock_db.install_components.await_args.kwargs["version"] == "v1.5.0"
        mock_db.pin_provider_version.assert_awaited_once_with(1, "v1.5.0", 1)
        args = mock_db.update_provider_status.await_args
        assert args[0][1] == ProviderState.READY
        assert args[0][2]["contract"] == "v1beta1"
