"""Unit tests for db.py - Database manager."""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from contextlib import asynccontextmanager

from db import DatabaseManager, INVENTORY_SCHEMA, ProviderState, provider_from_row
from provider import ProviderKind
from repositories.memory import ConfigObject


def make_db():
    return DatabaseManager(
        host="localhost",
        port=5432,
        database="testdb",
        user="testuser",
        password="testpass",
    )


@pytest.fixture
def conn():
    """Mock asyncpg connection with a working transaction()."""
    conn = AsyncMock()
    mock_transaction = AsyncMock()
    mock_transaction.__aenter__ = AsyncMock(return_value=mock_transaction)
    mock_transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=mock_transaction)
    return conn


@pytest.fixture
def db_manager(conn):
    """Database manager whose pool yields conn."""
    db = make_db()
    db.pool = AsyncMock()

    @asynccontextmanager
    async def mock_acquire():
        yield conn

    db.pool.acquire = mock_acquire
    return db


class TestProviderState:
    """Tests for ProviderState enum."""

    def test_state_values(self):
        assert [s.value for s in ProviderState] == [
            "pending",
            "reconciling",
            "waiting",
            "ready",
            "failed",
            "deleting",
        ]


class TestProviderFromRow:
    def test_builds_model(self, sample_provider_row):
        provider = provider_from_row(sample_provider_row)
        assert provider.id == 1
        assert provider.kind == ProviderKind.INFRASTRUCTURE
        assert provider.spec.version == "v1.5.0"
        assert provider.spec.secret_name == "aws-variables"
        assert provider.deleting is False

    def test_deleting_from_deleted_at(self, sample_provider_row):
        sample_provider_row["deleted_at"] = sample_provider_row["created_at"]
        assert provider_from_row(sample_provider_row).deleting is True

    def test_status_conditions(self, core_provider_row):
        provider = provider_from_row(core_provider_row)
        assert provider.status.contract == "v1beta1"
        assert provider.is_condition_true("ProviderInstalled")


class TestDatabaseManager:
    """Tests for DatabaseManager class."""

    def test_init(self):
        db = DatabaseManager(
            host="db",
            port=5433,
            database="providers",
            user="operator",
            password="secret",
            min_pool_size=3,
            max_pool_size=10,
        )
        assert (db.host, db.port, db.database) == ("db", 5433, "providers")
        assert (db.min_pool_size, db.max_pool_size) == (3, 10)
        assert db.pool is None

    def test_ensure_connected_raises_when_not_connected(self):
        with pytest.raises(RuntimeError) as exc_info:
            make_db()._ensure_connected()
        assert "Database not connected" in str(exc_info.value)

    def test_parse_provider_row(self):
        row = {
            "id": 1,
            "name": "aws",
            "spec": '{"version": "v1.0.0"}',
            "status": '{"contract": "v1beta1"}',
        }
        result = make_db()._parse_provider_row(row)
        assert result["spec"] == {"version": "v1.0.0"}
        assert result["status"] == {"contract": "v1beta1"}

    def test_parse_provider_row_empty_json_fields(self):
        result = make_db()._parse_provider_row({"id": 1, "spec": None, "status": ""})
        assert result["spec"] == {}
        assert result["status"] == {}

    def test_inventory_schema_tables(self):
        assert "CREATE TABLE IF NOT EXISTS provider_records" in INVENTORY_SCHEMA
        assert "CREATE TABLE IF NOT EXISTS component_objects" in INVENTORY_SCHEMA


@pytest.mark.asyncio
class TestDatabaseManagerAsync:
    """Async tests for DatabaseManager."""

    async def test_connect(self):
        db = make_db()
        with patch("db.asyncpg.create_pool", new_callable=AsyncMock) as mock_create:
            mock_pool = AsyncMock()
            mock_create.return_value = mock_pool

            await db.connect()

            mock_create.assert_called_once_with(
                host="localhost",
                port=5432,
                database="testdb",
                user="testuser",
                password="testpass",
                min_size=5,
                max_size=20,
                command_timeout=60,
            )
            assert db.pool is mock_pool

    async def test_close_when_not_connected(self):
        await make_db().close()

    async def test_initialize_schema_calls_run_migrations(self, db_manager):
        with patch("db.run_migrations", new_callable=AsyncMock) as mock_run:
            await db_manager.initialize_schema()
            mock_run.assert_called_once_with(db_manager.pool)

    async def test_initialize_schema_raises_when_not_connected(self):
        with pytest.raises(RuntimeError, match="Database not connected"):
            await make_db().initialize_schema()

    # Providers

    async def test_create_provider(self, db_manager, conn):
        conn.fetchval = AsyncMock(return_value=7)

        provider_id = await db_manager.create_provider(
            "aws", "capa-system", ProviderKind.INFRASTRUCTURE, {"version": "v1.0.0"}
        )

        assert provider_id == 7
        args = conn.fetchval.call_args[0]
        assert args[1:5] == (
            "aws",
            "capa-system",
            "InfrastructureProvider",
            json.dumps({"version": "v1.0.0"}),
        )
        assert args[5] == "pending"

    async def test_update_provider_returns_generation(self, db_manager, conn):
        conn.fetchval = AsyncMock(return_value=4)
        assert await db_manager.update_provider(1, {"version": "v2.0.0"}) == 4
        sql = conn.fetchval.call_args[0][0]
        assert "generation = generation + 1" in sql
        assert "parked = FALSE" in sql

    async def test_update_provider_not_found(self, db_manager, conn):
        conn.fetchval = AsyncMock(return_value=None)
        with pytest.raises(ValueError):
            await db_manager.update_provider(99, {})

    async def test_pin_provider_version_is_generation_gated(self, db_manager, conn):
        conn.fetchval = AsyncMock(return_value=1)

        assert await db_manager.pin_provider_version(1, "v2.0.0", 3) is True

        sql, provider_id, version, generation = conn.fetchval.call_args[0]
        assert "generation = $3" in sql
        assert "generation + 1" not in sql
        assert (provider_id, version, generation) == (1, "v2.0.0", 3)

    async def test_pin_provider_version_skipped(self, db_manager, conn):
        conn.fetchval = AsyncMock(return_value=None)
        assert await db_manager.pin_provider_version(1, "v2.0.0", 3) is False

    async def test_hard_delete_provider(self, db_manager, conn):
        conn.fetchval = AsyncMock(return_value=1)
        assert await db_manager.hard_delete_provider(1) is True
        conn.fetchval = AsyncMock(return_value=None)
        assert await db_manager.hard_delete_provider(1) is False

    async def test_get_provider_not_found(self, db_manager, conn):
        conn.fetchrow = AsyncMock(return_value=None)
        assert await db_manager.get_provider(1) is None

    async def test_list_providers_filters(self, db_manager, conn):
        conn.fetch = AsyncMock(return_value=[{"id": 1, "spec": "{}", "status": "{}"}])

        rows = await db_manager.list_providers(
            kind=ProviderKind.CORE, namespace="capi-system", include_deleting=False
        )

        assert rows == [{"id": 1, "spec": {}, "status": {}}]
        query, *params = conn.fetch.call_args[0]
        assert "kind = $1" in query
        assert "namespace = $2" in query
        assert "deleted_at IS NULL" in query
        assert params == ["CoreProvider", "capi-system", 1000]

    async def test_needing_reconciliation_skips_parked(self, db_manager, conn):
        conn.fetch = AsyncMock(return_value=[])
        await db_manager.get_providers_needing_reconciliation(limit=4)
        query, limit = conn.fetch.call_args[0]
        assert "NOT parked" in query
        assert "last_attempted_generation" in query
        assert limit == 4

    async def test_mark_provider_reconciling(self, db_manager, conn):
        await db_manager.mark_provider_reconciling(1, 5)
        args = conn.execute.call_args[0]
        assert args[1:] == ("reconciling", 5, 1)

    async def test_update_status_ready(self, db_manager, conn):
        await db_manager.update_provider_status(
            1, ProviderState.READY, {"contract": "v1beta1"}, message="ok"
        )
        query, *params = conn.execute.call_args[0]
        assert "INTERVAL '5 minutes'" in query
        assert "retry_count = 0" in query
        assert params == ["ready", json.dumps({"contract": "v1beta1"}), "ok", 1]

    async def test_update_status_waiting(self, db_manager, conn):
        await db_manager.update_provider_status(
            1, ProviderState.WAITING, {}, requeue_after=30
        )
        query, *params = conn.execute.call_args[0]
        assert "next_reconcile_time = NOW() + INTERVAL '1 second' * $4" in query
        assert params[3] == 30.0
        assert params[-1] == 1

    async def test_update_status_failed_parked(self, db_manager, conn):
        await db_manager.update_provider_status(
            1, ProviderState.FAILED, {}, message="bad", park=True
        )
        query, *params = conn.execute.call_args[0]
        assert "retry_count = retry_count + 1" in query
        assert "next_reconcile_time = NULL" in query
        assert params[3] is True

    async def test_requeue_failed_providers(self, db_manager, conn):
        await db_manager.requeue_failed_providers(base_delay=10, max_delay=100, jitter_factor=0)
        query, *params = conn.execute.call_args[0]
        assert "NOT parked" in query
        assert params == [10, 100, 0]

    async def test_mark_provider_for_reconciliation_unparks(self, db_manager, conn):
        await db_manager.mark_provider_for_reconciliation(3)
        query, provider_id = conn.execute.call_args[0]
        assert "parked = FALSE" in query
        assert provider_id == 3

    # Secrets and config objects

    async def test_secret_round_trip(self, db_manager, conn):
        await db_manager.put_secret("ns", "vars", {"A": "1"})
        assert conn.execute.call_args[0][1:] == ("ns", "vars", '{"A": "1"}')

        conn.fetchval = AsyncMock(return_value='{"A": "1"}')
        assert await db_manager.get_secret("ns", "vars") == {"A": "1"}

        conn.fetchval = AsyncMock(return_value=None)
        assert await db_manager.get_secret("ns", "missing") is None

    async def test_list_secrets_hides_values(self, db_manager, conn):
        conn.fetch = AsyncMock(
            return_value=[{"namespace": "ns", "name": "vars", "data": '{"B": "x", "A": "y"}'}]
        )
        assert await db_manager.list_secrets("ns") == [
            {"namespace": "ns", "name": "vars", "keys": ["A", "B"]}
        ]

    async def test_list_config_objects_by_labels(self, db_manager, conn):
        conn.fetch = AsyncMock(
            return_value=[
                {
                    "namespace": "ns",
                    "name": "v1.0.0",
                    "data": '{"metadata": "m"}',
                    "labels": '{"provider": "aws"}',
                }
            ]
        )

        objects = await db_manager.list_config_objects("ns", {"provider": "aws"})

        assert objects == [
            ConfigObject(
                name="v1.0.0",
                namespace="ns",
                data={"metadata": "m"},
                labels={"provider": "aws"},
            )
        ]
        query, namespace, labels = conn.fetch.call_args[0]
        assert "labels @> $2::jsonb" in query
        assert json.loads(labels) == {"provider": "aws"}

    async def test_put_config_object(self, db_manager, conn):
        await db_manager.put_config_object(
            ConfigObject(name="c", namespace="ns", data={"a": "b"}, labels={"l": "v"})
        )
        assert conn.execute.call_args[0][1:] == ("ns", "c", '{"a": "b"}', '{"l": "v"}')

    # Inventory

    async def test_install_components_in_transaction(self, db_manager, conn):
        await db_manager.install_components(
            record_name="infrastructure-aws",
            namespace="capa-system",
            provider_name="aws",
            provider_type="InfrastructureProvider",
            version="v2.0.0",
            objects=[
                {
                    "api_version": "v1",
                    "kind": "Service",
                    "object_namespace": "capa-system",
                    "object_name": "webhook",
                    "body": {"kind": "Service"},
                }
            ],
        )

        conn.transaction.assert_called_once()
        rows = conn.executemany.call_args[0][1]
        assert rows == [
            (
                "capa-system",
                "infrastructure-aws",
                "v1",
                "Service",
                "capa-system",
                "webhook",
                '{"kind": "Service"}',
                "v2.0.0",
            )
        ]
        record_args = conn.execute.call_args[0][1:]
        assert record_args == (
            "infrastructure-aws",
            "capa-system",
            "aws",
            "InfrastructureProvider",
            "v2.0.0",
        )

    async def test_delete_components_returns_count(self, db_manager, conn):
        conn.execute = AsyncMock(side_effect=["DELETE 3", "DELETE 1"])

        deleted = await db_manager.delete_components(
            "infrastructure-aws", "capa-system", ["Namespace", "CustomResourceDefinition"]
        )

        assert deleted == 3
        first = conn.execute.call_args_list[0][0]
        assert first[1:] == (
            "capa-system",
            "infrastructure-aws",
            ["Namespace", "CustomResourceDefinition"],
        )

    async def test_get_provider_record(self, db_manager, conn):
        conn.fetchrow = AsyncMock(return_value={"name": "infrastructure-aws", "version": "v1"})
        assert await db_manager.get_provider_record("infrastructure-aws", "ns") == {
            "name": "infrastructure-aws",
            "version": "v1",
        }
        conn.fetchrow = AsyncMock(return_value=None)
        assert await db_manager.get_provider_record("infrastructure-aws", "ns") is None

    async def test_ensure_inventory_schema(self, db_manager, conn):
        await db_manager.ensure_inventory_schema()
        conn.execute.assert_called_once_with(INVENTORY_SCHEMA)
