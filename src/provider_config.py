"""
Provider registry configuration.

Resolves where a provider's releases live (by name and kind) and holds the
configuration variables used while rendering its components. Variables are
hydrated from the provider's secret; a custom fetch URL on the provider
overrides the built-in registry entry.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from errors import UnknownProviderError
from provider import ProviderKind

logger = logging.getLogger(__name__)

CORE_PROVIDER_NAME = "cluster-api"

_CAPI_RELEASES = "https://github.com/kubernetes-sigs/cluster-api/releases/latest"


@dataclass(frozen=True)
class ProviderConfig:
    """Registry location of a provider."""

    name: str
    kind: ProviderKind
    url: str

    @property
    def manifest_label(self) -> str:
        """Label value identifying the provider's objects, e.g. "infrastructure-aws"."""
        return self.kind.prefix + self.name


BUILTIN_PROVIDERS: List[ProviderConfig] = [
    ProviderConfig(
        CORE_PROVIDER_NAME, ProviderKind.CORE, f"{_CAPI_RELEASES}/core-components.yaml"
    ),
    ProviderConfig(
        "kubeadm",
        ProviderKind.BOOTSTRAP,
        f"{_CAPI_RELEASES}/bootstrap-components.yaml",
    ),
    ProviderConfig(
        "kubeadm",
        ProviderKind.CONTROL_PLANE,
        f"{_CAPI_RELEASES}/control-plane-components.yaml",
    ),
    ProviderConfig(
        "docker",
        ProviderKind.INFRASTRUCTURE,
        f"{_CAPI_RELEASES}/infrastructure-components-development.yaml",
    ),
    ProviderConfig(
        "aws",
        ProviderKind.INFRASTRUCTURE,
        "https://github.com/kubernetes-sigs/cluster-api-provider-aws/releases/latest/infrastructure-components.yaml",
    ),
    ProviderConfig(
        "azure",
        ProviderKind.INFRASTRUCTURE,
        "https://github.com/kubernetes-sigs/cluster-api-provider-azure/releases/latest/infrastructure-components.yaml",
    ),
    ProviderConfig(
        "gcp",
        ProviderKind.INFRASTRUCTURE,
        "https://github.com/kubernetes-sigs/cluster-api-provider-gcp/releases/latest/infrastructure-components.yaml",
    ),
    ProviderConfig(
        "vsphere",
        ProviderKind.INFRASTRUCTURE,
        "https://github.com/kubernetes-sigs/cluster-api-provider-vsphere/releases/latest/infrastructure-components.yaml",
    ),
    ProviderConfig(
        "openstack",
        ProviderKind.INFRASTRUCTURE,
        "https://github.com/kubernetes-sigs/cluster-api-provider-openstack/releases/latest/infrastructure-components.yaml",
    ),
    ProviderConfig(
        "metal3",
        ProviderKind.INFRASTRUCTURE,
        "https://github.com/metal3-io/cluster-api-provider-metal3/releases/latest/infrastructure-components.yaml",
    ),
]


class VariablesReader:
    """In-memory store of configuration variables and custom provider URLs."""

    def __init__(self, variables: Optional[Dict[str, str]] = None):
        self._variables: Dict[str, str] = dict(variables or {})
        self._providers: List[ProviderConfig] = []

    def get(self, key: str) -> Optional[str]:
        return self._variables.get(key)

    def set(self, key: str, value: str) -> None:
        self._variables[key] = value

    def variables(self) -> Dict[str, str]:
        return dict(self._variables)

    def add_provider(self, name: str, kind: ProviderKind, url: str) -> "VariablesReader":
        """Register a custom provider URL. Returns self for chaining."""
        self._providers = [
            p for p in self._providers if not (p.name == name and p.kind == kind)
        ]
        self._providers.append(ProviderConfig(name=name, kind=kind, url=url))
        return self

    def providers(self) -> List[ProviderConfig]:
        return list(self._providers)


class ConfigClient:
    """Resolves provider registry configuration and variables."""

    def __init__(self, reader: VariablesReader):
        self.reader = reader

    def providers(self) -> List[ProviderConfig]:
        """Built-in providers with user-supplied entries taking precedence."""
        custom = self.reader.providers()
        overridden = {(p.name, p.kind) for p in custom}
        builtin = [p for p in BUILTIN_PROVIDERS if (p.name, p.kind) not in overridden]
        return builtin + custom

    def get_provider(self, name: str, kind: ProviderKind) -> ProviderConfig:
        """
        Get the registry configuration for a provider.

        Raises:
            UnknownProviderError: If no entry matches name and kind.
        """
        for provider_config in self.providers():
            if provider_config.name == name and provider_config.kind == kind:
                return provider_config
        raise UnknownProviderError(
            f"failed to get configuration for the {kind.value} with name {name}. "
            f"Please check the provider name and/or add configuration for new providers "
            f"using the spec.fetch_config.url field"
        )

    def variables(self) -> Dict[str, str]:
        return self.reader.variables()
