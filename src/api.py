"""
HTTP API - REST intake for providers, secrets and config objects.

Providers are validated on admission; the controller picks up stored
changes on its next poll.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

from provider import ProviderKind, ProviderSpec, identity_for
from repositories.memory import ConfigObject, parse_selector
from validation import default_provider_spec, validate_provider_spec

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_DATA_SIZE = 1024 * 1024  # 1MB max for secret and config object data


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_data_size(value: Dict[str, str], field_name: str) -> Dict[str, str]:
    if len(json.dumps(value)) > MAX_DATA_SIZE:
        raise ValueError(
            f"{field_name} exceeds maximum size of {MAX_DATA_SIZE // 1024}KB"
        )
    return value


# Provider models


class ProviderCreate(BaseModel):
    """Request model for creating a provider."""

    name: str = Field(..., description="Provider name", examples=["aws"])
    namespace: str = Field(..., description="Target namespace", examples=["capa-system"])
    kind: ProviderKind = Field(..., description="Provider kind")
    spec: ProviderSpec = Field(default_factory=ProviderSpec)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "name")

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        return validate_name_format(v, "namespace")


class ProviderUpdate(BaseModel):
    """Request model for replacing a provider's spec."""

    spec: ProviderSpec


class ProviderResponse(BaseModel):
    """Response model for a provider."""

    id: int
    name: str
    namespace: str
    kind: str
    state: str
    status_message: Optional[str] = None
    generation: int
    spec: Dict[str, Any] = {}
    status: Dict[str, Any] = {}
    deleting: bool = False
    created_at: datetime
    updated_at: datetime
    last_reconcile_time: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProviderResponse":
        return cls(**row, deleting=row.get("deleted_at") is not None)


# Secret and config object models


class SecretWrite(BaseModel):
    data: Dict[str, str]

    @field_validator("data")
    @classmethod
    def validate_size(cls, v: Dict[str, str]) -> Dict[str, str]:
        return validate_data_size(v, "data")


class SecretResponse(BaseModel):
    """Secret metadata; values are never returned."""

    namespace: str
    name: str
    keys: List[str]


class ConfigObjectWrite(BaseModel):
    data: Dict[str, str]
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("data")
    @classmethod
    def validate_size(cls, v: Dict[str, str]) -> Dict[str, str]:
        return validate_data_size(v, "data")


class ConfigObjectResponse(BaseModel):
    namespace: str
    name: str
    data: Dict[str, str]
    labels: Dict[str, str]


def _spec_to_dict(spec: ProviderSpec) -> Dict[str, Any]:
    return spec.model_dump(mode="json", exclude_none=True)


class APIServer:
    """
    REST API for the provider operator.

    Endpoints:
    - Health check: GET /
    - Providers CRUD: /api/v1/providers
    - Reconciliation: POST /api/v1/providers/{id}/reconcile
    - Installed objects: GET /api/v1/providers/{id}/components
    - Secrets: /api/v1/secrets/{namespace}/{name}
    - Config objects: /api/v1/config-objects/{namespace}/{name}
    """

    def __init__(
        self,
        db_manager,
        host: str = "0.0.0.0",
        port: int = 8000,
        log_level: str = "info",
        cors_origins: Optional[List[str]] = None,
    ):
        self._db_manager = db_manager
        self.host = host
        self.port = port
        self.log_level = log_level.lower()
        self.server: Optional[uvicorn.Server] = None

        self.app = FastAPI(
            title="Provider Operator API",
            description="Lifecycle management of versioned provider components",
            version="1.0.0",
        )
        if cors_origins:
            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=cors_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )
        self._setup_routes()

    def _setup_routes(self) -> None:
        app = self.app

        @app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "provider-operator"}

        # ==================== Provider Endpoints ====================

        @app.post("/api/v1/providers", response_model=ProviderResponse, status_code=201)
        async def create_provider(provider: ProviderCreate):
            """Create a new provider."""
            spec = default_provider_spec(provider.spec, provider.namespace)
            errors = validate_provider_spec(spec)
            if errors:
                raise HTTPException(status_code=400, detail="; ".join(errors))

            try:
                existing = await self._db_manager.get_provider_by_name(
                    provider.kind, provider.namespace, provider.name
                )
                if existing:
                    raise HTTPException(
                        status_code=409,
                        detail=f"{provider.kind.value} {provider.namespace}/"
                        f"{provider.name} already exists",
                    )

                provider_id = await self._db_manager.create_provider(
                    name=provider.name,
                    namespace=provider.namespace,
                    kind=provider.kind,
                    spec=_spec_to_dict(spec),
                )
                created = await self._db_manager.get_provider(provider_id)
                return ProviderResponse.from_row(created)

            except HTTPException:
                raise
            except Exception as e:
                if "unique constraint" in str(e).lower():
                    raise HTTPException(
                        status_code=409,
                        detail=f"{provider.kind.value} {provider.namespace}/"
                        f"{provider.name} already exists",
                    )
                logger.error(f"Error creating provider: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @app.get("/api/v1/providers", response_model=List[ProviderResponse])
        async def list_providers(
            kind: Optional[ProviderKind] = None,
            namespace: Optional[str] = None,
            limit: int = 100,
        ):
            """List providers with optional filters."""
            try:
                rows = await self._db_manager.list_providers(
                    kind=kind, namespace=namespace, limit=limit
                )
                return [ProviderResponse.from_row(row) for row in rows]
            except Exception as e:
                logger.error(f"Error listing providers: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @app.get("/api/v1/providers/{provider_id}", response_model=ProviderResponse)
        async def get_provider(provider_id: int):
            row = await self._db_manager.get_provider(provider_id)
            if not row:
                raise HTTPException(status_code=404, detail="Provider not found")
            return ProviderResponse.from_row(row)

        @app.put("/api/v1/providers/{provider_id}", response_model=ProviderResponse)
        async def update_provider(provider_id: int, update: ProviderUpdate):
            """Replace a provider's spec."""
            current = await self._db_manager.get_provider(provider_id)
            if not current:
                raise HTTPException(status_code=404, detail="Provider not found")
            if current.get("deleted_at") is not None:
                raise HTTPException(
                    status_code=409, detail="Provider is being deleted"
                )

            spec = default_provider_spec(update.spec, current["namespace"])
            errors = validate_provider_spec(spec)
            if errors:
                raise HTTPException(status_code=400, detail="; ".join(errors))

            try:
                await self._db_manager.update_provider(provider_id, _spec_to_dict(spec))
                updated = await self._db_manager.get_provider(provider_id)
                return ProviderResponse.from_row(updated)
            except Exception as e:
                logger.error(f"Error updating provider: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @app.delete("/api/v1/providers/{provider_id}", status_code=202)
        async def delete_provider(provider_id: int):
            """Delete a provider (removes its installed components)."""
            provider = await self._db_manager.get_provider(provider_id)
            if not provider:
                raise HTTPException(status_code=404, detail="Provider not found")

            await self._db_manager.delete_provider(provider_id)
            return {
                "message": "Provider marked for deletion",
                "provider_id": provider_id,
            }

        @app.post("/api/v1/providers/{provider_id}/reconcile", status_code=202)
        async def trigger_reconciliation(provider_id: int):
            """Manually trigger reconciliation for a provider."""
            provider = await self._db_manager.get_provider(provider_id)
            if not provider:
                raise HTTPException(status_code=404, detail="Provider not found")

            await self._db_manager.mark_provider_for_reconciliation(provider_id)
            return {
                "message": "Reconciliation triggered",
                "provider_id": provider_id,
            }

        @app.get("/api/v1/providers/{provider_id}/components")
        async def list_components(provider_id: int):
            """List the objects installed for a provider."""
            provider = await self._db_manager.get_provider(provider_id)
            if not provider:
                raise HTTPException(status_code=404, detail="Provider not found")

            identity = identity_for(
                ProviderKind(provider["kind"]), provider["name"], provider["namespace"]
            )
            record = await self._db_manager.get_provider_record(
                identity.name, identity.namespace
            )
            objects = await self._db_manager.list_component_objects(
                identity.name, identity.namespace
            )
            return {
                "record": record,
                "objects": objects,
            }

        # ==================== Secret Endpoints ====================

        @app.put(
            "/api/v1/secrets/{namespace}/{name}", response_model=SecretResponse
        )
        async def put_secret(namespace: str, name: str, secret: SecretWrite):
            """Create or replace a secret holding provider variables."""
            try:
                validate_name_format(namespace, "namespace")
                validate_name_format(name, "name")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

            await self._db_manager.put_secret(namespace, name, secret.data)
            return SecretResponse(
                namespace=namespace, name=name, keys=sorted(secret.data)
            )

        @app.get("/api/v1/secrets", response_model=List[SecretResponse])
        async def list_secrets(namespace: Optional[str] = None):
            rows = await self._db_manager.list_secrets(namespace)
            return [SecretResponse(**row) for row in rows]

        @app.delete("/api/v1/secrets/{namespace}/{name}", status_code=204)
        async def delete_secret(namespace: str, name: str):
            if not await self._db_manager.delete_secret(namespace, name):
                raise HTTPException(status_code=404, detail="Secret not found")

        # ==================== Config Object Endpoints ====================

        @app.put(
            "/api/v1/config-objects/{namespace}/{name}",
            response_model=ConfigObjectResponse,
        )
        async def put_config_object(
            namespace: str, name: str, config_object: ConfigObjectWrite
        ):
            """Create or replace a config object holding provider manifests."""
            try:
                validate_name_format(namespace, "namespace")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

            obj = ConfigObject(
                name=name,
                namespace=namespace,
                data=config_object.data,
                labels=config_object.labels,
            )
            await self._db_manager.put_config_object(obj)
            return ConfigObjectResponse(**obj.__dict__)

        @app.get(
            "/api/v1/config-objects/{namespace}",
            response_model=List[ConfigObjectResponse],
        )
        async def list_config_objects(namespace: str, selector: Optional[str] = None):
            """List config objects, optionally filtered by an equality selector."""
            try:
                labels = parse_selector(selector)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

            objects = await self._db_manager.list_config_objects(namespace, labels)
            return [ConfigObjectResponse(**obj.__dict__) for obj in objects]

        @app.get(
            "/api/v1/config-objects/{namespace}/{name}",
            response_model=ConfigObjectResponse,
        )
        async def get_config_object(namespace: str, name: str):
            obj = await self._db_manager.get_config_object(namespace, name)
            if obj is None:
                raise HTTPException(status_code=404, detail="Config object not found")
            return ConfigObjectResponse(**obj.__dict__)

        @app.delete("/api/v1/config-objects/{namespace}/{name}", status_code=204)
        async def delete_config_object(namespace: str, name: str):
            if not await self._db_manager.delete_config_object(namespace, name):
                raise HTTPException(status_code=404, detail="Config object not found")

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
