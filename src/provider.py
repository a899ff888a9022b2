"""
Provider resource model.

A provider is a logical installable component instance (core, bootstrap,
control-plane or infrastructure) with a desired spec and an observed status.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from errors import SEVERITY_INFO, SEVERITY_WARNING

# Condition types
PREFLIGHT_CHECK_CONDITION = "PreflightCheckPassed"
PROVIDER_INSTALLED_CONDITION = "ProviderInstalled"

# Condition reasons
UNKNOWN_PROVIDER_REASON = "UnknownProvider"
CAPI_VERSION_INCOMPATIBILITY_REASON = "CAPIVersionIncompatibility"
COMPONENTS_FETCH_ERROR_REASON = "ComponentsFetchError"
OLD_COMPONENTS_DELETION_ERROR_REASON = "OldComponentsDeletionError"
INCORRECT_VERSION_FORMAT_REASON = "IncorrectVersionFormat"
FETCH_CONFIG_VALIDATION_ERROR_REASON = "FetchConfigValidationError"
MORE_THAN_ONE_PROVIDER_INSTANCE_EXISTS_REASON = "MoreThanOneExists"
WAITING_FOR_CORE_PROVIDER_REASON = "WaitingForCoreProvider"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"


class ProviderKind(Enum):
    """The closed set of provider kinds."""

    CORE = "CoreProvider"
    BOOTSTRAP = "BootstrapProvider"
    CONTROL_PLANE = "ControlPlaneProvider"
    INFRASTRUCTURE = "InfrastructureProvider"

    @property
    def prefix(self) -> str:
        """Name prefix used for inventory records and manifest labels."""
        return _KIND_PREFIXES[self]


_KIND_PREFIXES = {
    ProviderKind.CORE: "",
    ProviderKind.BOOTSTRAP: "bootstrap-",
    ProviderKind.CONTROL_PLANE: "control-plane-",
    ProviderKind.INFRASTRUCTURE: "infrastructure-",
}


class ObjectReference(BaseModel):
    """Reference to a config object, defaulting to the provider's namespace."""

    name: str
    namespace: Optional[str] = None


class FetchConfig(BaseModel):
    """Where provider manifests are fetched from."""

    url: Optional[str] = None
    config_map: Optional[ObjectReference] = None
    # Equality-based selector expression, e.g. "provider=aws,tier=stable"
    selector: Optional[str] = None
    match_labels: Optional[Dict[str, str]] = None


class ContainerSpec(BaseModel):
    name: str
    image_url: Optional[str] = None
    args: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)
    resources: Optional[Dict[str, Any]] = None


class DeploymentSpec(BaseModel):
    """Overrides applied to Deployments shipped in the provider components."""

    replicas: Optional[int] = Field(default=None, ge=0)
    node_selector: Dict[str, str] = Field(default_factory=dict)
    tolerations: List[Dict[str, Any]] = Field(default_factory=list)
    containers: List[ContainerSpec] = Field(default_factory=list)


class ProviderSpec(BaseModel):
    version: Optional[str] = None
    secret_name: Optional[str] = None
    secret_namespace: Optional[str] = None
    fetch_config: Optional[FetchConfig] = None
    deployment: Optional[DeploymentSpec] = None


class Condition(BaseModel):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    severity: str = ""
    last_transition_time: Optional[datetime] = None


class ProviderStatus(BaseModel):
    contract: Optional[str] = None
    observed_generation: int = 0
    conditions: List[Condition] = Field(default_factory=list)


class Provider(BaseModel):
    """A provider instance as stored by the operator."""

    id: Optional[int] = None
    name: str
    namespace: str
    kind: ProviderKind
    generation: int = 1
    deleting: bool = False
    spec: ProviderSpec = Field(default_factory=ProviderSpec)
    status: ProviderStatus = Field(default_factory=ProviderStatus)

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.status.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def is_condition_true(self, condition_type: str) -> bool:
        condition = self.get_condition(condition_type)
        return condition is not None and condition.status == CONDITION_TRUE


class ProviderIdentity(BaseModel):
    """Name and namespace of a provider's inventory record."""

    name: str
    namespace: str


def identity_for(kind: ProviderKind, name: str, namespace: str) -> ProviderIdentity:
    """Inventory identity for a provider: the name is prefixed by its kind."""
    return ProviderIdentity(name=kind.prefix + name, namespace=namespace)


def set_condition(
    provider: Provider,
    condition_type: str,
    status: str,
    reason: str = "",
    message: str = "",
    severity: str = "",
) -> Condition:
    """
    Set a condition on the provider status, replacing any of the same type.

    The transition time only moves when the status value changes.
    """
    now = datetime.now(timezone.utc)
    existing = provider.get_condition(condition_type)
    condition = Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        severity=severity,
        last_transition_time=now,
    )
    if existing is not None:
        if existing.status == status:
            condition.last_transition_time = existing.last_transition_time
        provider.status.conditions = [
            c for c in provider.status.conditions if c.type != condition_type
        ]
    provider.status.conditions.append(condition)
    return condition


def mark_true(provider: Provider, condition_type: str) -> Condition:
    return set_condition(provider, condition_type, CONDITION_TRUE)


def mark_false(
    provider: Provider,
    condition_type: str,
    reason: str,
    message: str,
    severity: str = SEVERITY_WARNING,
) -> Condition:
    return set_condition(
        provider, condition_type, CONDITION_FALSE, reason, message, severity
    )


def mark_waiting(
    provider: Provider, condition_type: str, reason: str, message: str
) -> Condition:
    return set_condition(
        provider, condition_type, CONDITION_FALSE, reason, message, SEVERITY_INFO
    )
