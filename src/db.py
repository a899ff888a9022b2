"""
Database Manager - PostgreSQL schema and operations.

Stores providers, their secrets and config objects, and the inventory of
installed provider components.
"""

import asyncpg
import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from migrate import run_migrations
from provider import Provider, ProviderKind, ProviderSpec, ProviderStatus
from repositories.memory import ConfigObject

logger = logging.getLogger(__name__)


class ProviderState(Enum):
    """Reconciliation state of a provider row."""

    PENDING = "pending"
    RECONCILING = "reconciling"
    WAITING = "waiting"
    READY = "ready"
    FAILED = "failed"
    DELETING = "deleting"


INVENTORY_SCHEMA = """
CREATE TABLE IF NOT EXISTS provider_records (
    name VARCHAR(255) NOT NULL,
    namespace VARCHAR(255) NOT NULL,
    provider_name VARCHAR(255) NOT NULL,
    type VARCHAR(64) NOT NULL,
    version VARCHAR(128),
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
    PRIMARY KEY (namespace, name)
);

CREATE TABLE IF NOT EXISTS component_objects (
    record_namespace VARCHAR(255) NOT NULL,
    record_name VARCHAR(255) NOT NULL,
    api_version VARCHAR(255) NOT NULL,
    kind VARCHAR(255) NOT NULL,
    object_namespace VARCHAR(255) NOT NULL DEFAULT '',
    object_name VARCHAR(255) NOT NULL,
    body JSONB NOT NULL,
    version VARCHAR(128),
    applied_at TIMESTAMP NOT NULL DEFAULT NOW(),
    PRIMARY KEY (record_namespace, record_name, kind, object_namespace, object_name)
);
"""


def provider_from_row(row: Dict[str, Any]) -> Provider:
    """Build a Provider model from a parsed provider row."""
    return Provider(
        id=row["id"],
        name=row["name"],
        namespace=row["namespace"],
        kind=ProviderKind(row["kind"]),
        generation=row.get("generation", 1),
        deleting=row.get("deleted_at") is not None,
        spec=ProviderSpec.model_validate(row.get("spec") or {}),
        status=ProviderStatus.model_validate(row.get("status") or {}),
    )


class DatabaseManager:
    """Manages PostgreSQL database operations for the operator."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Provider Methods ====================

    async def create_provider(
        self,
        name: str,
        namespace: str,
        kind: ProviderKind,
        spec: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Create a new provider.

        Args:
            name: Provider name (e.g., 'aws')
            namespace: Namespace the provider is installed into
            kind: Provider kind
            spec: Provider spec as a JSON-compatible dict
        """
        if spec is None:
            spec = {}

        async with self.pool.acquire() as conn:
            provider_id = await conn.fetchval(
                """
                INSERT INTO providers (name, namespace, kind, spec, state, next_reconcile_time)
                VALUES ($1, $2, $3, $4, $5, NOW())
                RETURNING id
                """,
                name,
                namespace,
                kind.value,
                json.dumps(spec),
                ProviderState.PENDING.value,
            )

            logger.info(
                f"Created {kind.value} {namespace}/{name} with ID {provider_id}"
            )
            return provider_id

    async def update_provider(self, provider_id: int, spec: Dict[str, Any]) -> int:
        """
        Replace a provider's spec and bump its generation.

        Returns:
            The new generation.
        """
        async with self.pool.acquire() as conn:
            generation = await conn.fetchval(
                """
                UPDATE providers
                SET spec = $1,
                    generation = generation + 1,
                    state = $2,
                    parked = FALSE,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE id = $3 AND deleted_at IS NULL
                RETURNING generation
                """,
                json.dumps(spec),
                ProviderState.PENDING.value,
                provider_id,
            )
            if generation is None:
                raise ValueError(f"Provider {provider_id} not found")

            logger.info(f"Updated provider {provider_id} to generation {generation}")
            return generation

    async def pin_provider_version(
        self, provider_id: int, version: str, expected_generation: int
    ) -> bool:
        """
        Record a resolved version on a provider whose spec has none.

        The write is skipped when the spec changed since the reconciled
        generation, and it does not bump the generation itself.

        Returns:
            True if the version was written.
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                UPDATE providers
                SET spec = jsonb_set(spec, '{version}', to_jsonb($2::text)),
                    updated_at = NOW()
                WHERE id = $1
                  AND generation = $3
                  AND COALESCE(spec->>'version', '') = ''
                RETURNING id
                """,
                provider_id,
                version,
                expected_generation,
            )
            if result:
                logger.info(f"Pinned provider {provider_id} to version {version}")
                return True
            return False

    async def delete_provider(self, provider_id: int) -> None:
        """Mark a provider for deletion (soft delete)."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE providers
                SET state = $1,
                    parked = FALSE,
                    deleted_at = NOW(),
                    next_reconcile_time = NOW()
                WHERE id = $2
                """,
                ProviderState.DELETING.value,
                provider_id,
            )

            logger.info(f"Marked provider {provider_id} for deletion")

    async def hard_delete_provider(self, provider_id: int) -> bool:
        """
        Permanently delete a soft-deleted provider.

        Returns:
            True if the row was removed.
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                DELETE FROM providers
                WHERE id = $1 AND deleted_at IS NOT NULL
                RETURNING id
                """,
                provider_id,
            )
            if result:
                logger.info(f"Hard-deleted provider {provider_id}")
                return True
            return False

    async def get_provider(self, provider_id: int) -> Optional[Dict[str, Any]]:
        """Get a provider by ID."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM providers WHERE id = $1",
                provider_id,
            )
            if not row:
                return None

            return self._parse_provider_row(row)

    async def get_provider_by_name(
        self, kind: ProviderKind, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """Get a provider by kind, namespace and name."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM providers
                WHERE kind = $1 AND namespace = $2 AND name = $3
                """,
                kind.value,
                namespace,
                name,
            )
            if not row:
                return None

            return self._parse_provider_row(row)

    async def list_providers(
        self,
        kind: Optional[ProviderKind] = None,
        namespace: Optional[str] = None,
        include_deleting: bool = True,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        """List providers with optional filters."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM providers WHERE 1=1"
            params = []
            param_count = 0

            if kind:
                param_count += 1
                query += f" AND kind = ${param_count}"
                params.append(kind.value)

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            if not include_deleting:
                query += " AND deleted_at IS NULL"

            param_count += 1
            query += f" ORDER BY kind, namespace, name LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_provider_row(row) for row in rows]

    async def get_providers_needing_reconciliation(
        self, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """
        Get providers that need a reconciliation pass.

        Picks up providers whose spec changed since the last attempt and
        providers whose scheduled reconcile time has come.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM providers
                WHERE state != 'reconciling'
                  AND (
                    -- Spec changed since the last attempt
                    (generation > last_attempted_generation AND NOT parked)
                    -- Scheduled, retried or deleted
                    OR next_reconcile_time <= NOW()
                  )
                ORDER BY
                    CASE
                        WHEN deleted_at IS NOT NULL THEN 0
                        WHEN kind = 'CoreProvider' THEN 1
                        ELSE 2
                    END,
                    next_reconcile_time ASC NULLS FIRST
                LIMIT $1
                """,
                limit,
            )

            return [self._parse_provider_row(row) for row in rows]

    async def mark_provider_reconciling(self, provider_id: int, generation: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE providers
                SET state = $1,
                    last_attempted_generation = $2,
                    next_reconcile_time = NULL,
                    updated_at = NOW()
                WHERE id = $3
                """,
                ProviderState.RECONCILING.value,
                generation,
                provider_id,
            )

    async def update_provider_status(
        self,
        provider_id: int,
        state: ProviderState,
        status: Dict[str, Any],
        message: Optional[str] = None,
        requeue_after: Optional[float] = None,
        park: bool = False,
    ) -> None:
        """
        Write a provider's observed status and schedule its next pass.

        Args:
            provider_id: The provider ID
            state: New reconciliation state
            status: Provider status as a JSON-compatible dict
            message: Human readable summary of the pass
            requeue_after: Seconds until the next pass (WAITING state)
            park: For FAILED, wait for a spec change instead of retrying
        """
        async with self.pool.acquire() as conn:
            query_parts = [
                "UPDATE providers SET state = $1, status = $2, "
                "status_message = $3, updated_at = NOW()"
            ]
            params: List[Any] = [state.value, json.dumps(status), message]
            param_count = 3

            if state == ProviderState.READY:
                # Reconcile again in 5 minutes for drift detection
                query_parts.append(
                    "next_reconcile_time = NOW() + INTERVAL '5 minutes', "
                    "last_reconcile_time = NOW(), "
                    "retry_count = 0, parked = FALSE"
                )
            elif state == ProviderState.WAITING:
                param_count += 1
                query_parts.append(
                    f"next_reconcile_time = NOW() + INTERVAL '1 second' * ${param_count}"
                )
                params.append(float(requeue_after or 0))
            elif state == ProviderState.FAILED:
                # Scheduled by requeue_failed_providers unless parked
                param_count += 1
                query_parts.append(
                    f"retry_count = retry_count + 1, next_reconcile_time = NULL, "
                    f"parked = ${param_count}"
                )
                params.append(park)

            param_count += 1
            params.append(provider_id)

            query = ", ".join(query_parts) + f" WHERE id = ${param_count}"
            await conn.execute(query, *params)

    async def requeue_failed_providers(
        self,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ) -> None:
        """
        Schedule failed providers for retry with exponential backoff and jitter.

        Parked providers are left alone until their spec changes.

        Args:
            base_delay: Base delay in seconds (default 60)
            max_delay: Maximum delay in seconds (default 3600 = 1 hour)
            jitter_factor: Jitter factor ±X (default 0.1 = ±10%)
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE providers
                SET next_reconcile_time = NOW() + (
                    INTERVAL '1 second' * LEAST(
                        $1 * POWER(2, LEAST(GREATEST(retry_count - 1, 0), 10)),
                        $2
                    ) * (1 + (random() * 2 - 1) * $3)
                )
                WHERE state = 'failed'
                  AND next_reconcile_time IS NULL
                  AND NOT parked
                """,
                base_delay,
                max_delay,
                jitter_factor,
            )

    async def mark_provider_for_reconciliation(self, provider_id: int) -> None:
        """Manually trigger reconciliation for a provider."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE providers
                SET next_reconcile_time = NOW(), parked = FALSE
                WHERE id = $1 AND state != 'reconciling'
                """,
                provider_id,
            )

    def _parse_provider_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """Parse a provider row, converting JSON fields into dicts."""
        result = dict(row)
        result["spec"] = json.loads(result["spec"]) if result.get("spec") else {}
        result["status"] = json.loads(result["status"]) if result.get("status") else {}
        return result

    # ==================== Secret Methods ====================

    async def put_secret(self, namespace: str, name: str, data: Dict[str, str]) -> None:
        """Create or replace a secret."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO secrets (namespace, name, data)
                VALUES ($1, $2, $3)
                ON CONFLICT (namespace, name)
                DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
                """,
                namespace,
                name,
                json.dumps(data),
            )
            logger.info(f"Stored secret {namespace}/{name}")

    async def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        """Get a secret's data, or None if it does not exist."""
        async with self.pool.acquire() as conn:
            data = await conn.fetchval(
                "SELECT data FROM secrets WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if data is None:
                return None
            return json.loads(data)

    async def list_secrets(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        """List secret names and keys; values are never returned."""
        async with self.pool.acquire() as conn:
            if namespace:
                rows = await conn.fetch(
                    "SELECT namespace, name, data FROM secrets WHERE namespace = $1 "
                    "ORDER BY name",
                    namespace,
                )
            else:
                rows = await conn.fetch(
                    "SELECT namespace, name, data FROM secrets ORDER BY namespace, name"
                )
            return [
                {
                    "namespace": row["namespace"],
                    "name": row["name"],
                    "keys": sorted(json.loads(row["data"]).keys()),
                }
                for row in rows
            ]

    async def delete_secret(self, namespace: str, name: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                "DELETE FROM secrets WHERE namespace = $1 AND name = $2 RETURNING name",
                namespace,
                name,
            )
            return result is not None

    # ==================== Config Object Methods ====================

    async def put_config_object(self, config_object: ConfigObject) -> None:
        """Create or replace a config object."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO config_objects (namespace, name, data, labels)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (namespace, name)
                DO UPDATE SET data = EXCLUDED.data,
                              labels = EXCLUDED.labels,
                              updated_at = NOW()
                """,
                config_object.namespace,
                config_object.name,
                json.dumps(config_object.data),
                json.dumps(config_object.labels),
            )
            logger.info(
                f"Stored config object {config_object.namespace}/{config_object.name}"
            )

    async def get_config_object(
        self, namespace: str, name: str
    ) -> Optional[ConfigObject]:
        """Get a config object, or None if it does not exist."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM config_objects WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_config_object_row(row)

    async def list_config_objects(
        self, namespace: str, labels: Optional[Dict[str, str]] = None
    ) -> List[ConfigObject]:
        """List config objects in a namespace whose labels contain all of labels."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM config_objects
                WHERE namespace = $1 AND labels @> $2::jsonb
                ORDER BY name
                """,
                namespace,
                json.dumps(labels or {}),
            )
            return [self._parse_config_object_row(row) for row in rows]

    async def delete_config_object(self, namespace: str, name: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                "DELETE FROM config_objects WHERE namespace = $1 AND name = $2 "
                "RETURNING name",
                namespace,
                name,
            )
            return result is not None

    def _parse_config_object_row(self, row: asyncpg.Record) -> ConfigObject:
        return ConfigObject(
            name=row["name"],
            namespace=row["namespace"],
            data=json.loads(row["data"]) if row["data"] else {},
            labels=json.loads(row["labels"]) if row["labels"] else {},
        )

    # ==================== Inventory Methods ====================

    async def ensure_inventory_schema(self) -> None:
        """Create the inventory tables if they do not exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(INVENTORY_SCHEMA)

    async def get_provider_record(
        self, name: str, namespace: str
    ) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM provider_records WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            return dict(row) if row else None

    async def install_components(
        self,
        record_name: str,
        namespace: str,
        provider_name: str,
        provider_type: str,
        version: str,
        objects: List[Dict[str, Any]],
    ) -> None:
        """
        Store component objects and the provider record in one transaction.

        Each object dict holds api_version, kind, object_namespace,
        object_name and body.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO component_objects (
                        record_namespace, record_name, api_version, kind,
                        object_namespace, object_name, body, version
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    ON CONFLICT (record_namespace, record_name, kind, object_namespace, object_name)
                    DO UPDATE SET api_version = EXCLUDED.api_version,
                                  body = EXCLUDED.body,
                                  version = EXCLUDED.version,
                                  applied_at = NOW()
                    """,
                    [
                        (
                            namespace,
                            record_name,
                            obj["api_version"],
                            obj["kind"],
                            obj["object_namespace"],
                            obj["object_name"],
                            json.dumps(obj["body"]),
                            version,
                        )
                        for obj in objects
                    ],
                )
                await conn.execute(
                    """
                    INSERT INTO provider_records (name, namespace, provider_name, type, version)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (namespace, name)
                    DO UPDATE SET provider_name = EXCLUDED.provider_name,
                                  type = EXCLUDED.type,
                                  version = EXCLUDED.version,
                                  updated_at = NOW()
                    """,
                    record_name,
                    namespace,
                    provider_name,
                    provider_type,
                    version,
                )

    async def delete_components(
        self, record_name: str, namespace: str, keep_kinds: List[str]
    ) -> int:
        """
        Delete a provider record and its component objects.

        Objects whose kind is in keep_kinds are left in place.

        Returns:
            Number of component objects deleted.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    DELETE FROM component_objects
                    WHERE record_namespace = $1
                      AND record_name = $2
                      AND NOT (kind = ANY($3::text[]))
                    """,
                    namespace,
                    record_name,
                    keep_kinds,
                )
                await conn.execute(
                    "DELETE FROM provider_records WHERE namespace = $1 AND name = $2",
                    namespace,
                    record_name,
                )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(result.split()[-1])

    async def list_component_objects(
        self, record_name: str, namespace: str
    ) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT api_version, kind, object_namespace, object_name, version, applied_at
                FROM component_objects
                WHERE record_namespace = $1 AND record_name = $2
                ORDER BY kind, object_namespace, object_name
                """,
                namespace,
                record_name,
            )
            return [dict(row) for row in rows]
