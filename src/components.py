"""
Provider components - rendering raw manifests into a ComponentSet.

The renderer substitutes configuration variables, points every namespaced
object at the provider's namespace and labels objects with the provider they
belong to. Provider-specific customizations (image, replicas, resources...)
are applied afterwards by altering the rendered set.
"""

import copy
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import yaml

from errors import ComponentsFetchError
from provider import DeploymentSpec, Provider, ProviderKind
from provider_config import ProviderConfig

logger = logging.getLogger(__name__)

PROVIDER_LABEL = "cluster.x-k8s.io/provider"
CLUSTERCTL_LABEL = "clusterctl.cluster.x-k8s.io"

NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"
DEPLOYMENT_KIND = "Deployment"

CLUSTER_SCOPED_KINDS = frozenset(
    {
        NAMESPACE_KIND,
        CRD_KIND,
        "ClusterRole",
        "ClusterRoleBinding",
        "MutatingWebhookConfiguration",
        "ValidatingWebhookConfiguration",
        "APIService",
        "PriorityClass",
        "StorageClass",
    }
)

# ${VAR} or ${VAR:=default}
_VARIABLE_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::=([^}]*))?\}")

ObjectFn = Callable[[Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class ComponentsOptions:
    """Inputs for rendering provider components."""

    target_namespace: str
    version: str
    skip_template_process: bool = False


@dataclass(frozen=True)
class ComponentSet:
    """Rendered objects of one provider release."""

    version: str
    manifest_path: str
    objects: Tuple[Dict[str, Any], ...]
    provider_name: str
    provider_kind: ProviderKind
    target_namespace: str
    manifest_label: str

    def altered(self, fn: ObjectFn) -> "ComponentSet":
        """Return a new set with fn applied to a copy of every object."""
        return replace(
            self, objects=tuple(fn(copy.deepcopy(obj)) for obj in self.objects)
        )

    def objects_of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [obj for obj in self.objects if obj.get("kind") == kind]


def process_variables(
    raw: str, variables: Dict[str, str]
) -> str:
    """
    Replace ${VAR} and ${VAR:=default} references.

    Raises:
        ComponentsFetchError: If a variable without default has no value.
    """
    missing: List[str] = []

    def substitute(match: "re.Match[str]") -> str:
        name, default = match.group(1), match.group(2)
        if name in variables:
            return variables[name]
        if default is not None:
            return default
        missing.append(name)
        return match.group(0)

    rendered = _VARIABLE_PATTERN.sub(substitute, raw)
    if missing:
        raise ComponentsFetchError(
            f"value for variables [{', '.join(sorted(set(missing)))}] "
            f"is not set. Please set the value using the provider's secret"
        )
    return rendered


class SimpleRenderer:
    """Renders a multi-document YAML manifest into a ComponentSet."""

    def render(
        self,
        raw: bytes,
        options: ComponentsOptions,
        provider_config: ProviderConfig,
        variables: Dict[str, str],
        manifest_path: str = "",
    ) -> ComponentSet:
        """
        Render raw manifest bytes.

        Raises:
            ComponentsFetchError: If variables are missing or the YAML is invalid.
        """
        text = raw.decode("utf-8")
        if not options.skip_template_process:
            text = process_variables(text, variables)

        try:
            documents = [doc for doc in yaml.safe_load_all(text) if doc]
        except yaml.YAMLError as e:
            raise ComponentsFetchError(
                f"failed to parse components yaml for provider "
                f"{provider_config.manifest_label}: {e}"
            )

        objects = []
        for doc in documents:
            if not isinstance(doc, dict) or "kind" not in doc:
                raise ComponentsFetchError(
                    f"invalid object in components yaml for provider "
                    f"{provider_config.manifest_label}: missing kind"
                )
            objects.append(
                self._prepare_object(doc, options.target_namespace, provider_config)
            )

        logger.debug(
            f"Rendered {len(objects)} objects for {provider_config.manifest_label} "
            f"{options.version}"
        )
        return ComponentSet(
            version=options.version,
            manifest_path=manifest_path,
            objects=tuple(objects),
            provider_name=provider_config.name,
            provider_kind=provider_config.kind,
            target_namespace=options.target_namespace,
            manifest_label=provider_config.manifest_label,
        )

    def _prepare_object(
        self,
        obj: Dict[str, Any],
        target_namespace: str,
        provider_config: ProviderConfig,
    ) -> Dict[str, Any]:
        metadata = obj.setdefault("metadata", {})
        labels = metadata.get("labels") or {}
        labels[PROVIDER_LABEL] = provider_config.manifest_label
        labels[CLUSTERCTL_LABEL] = ""
        metadata["labels"] = labels

        if not target_namespace:
            return obj

        kind = obj["kind"]
        if kind == NAMESPACE_KIND:
            metadata["name"] = target_namespace
        elif kind not in CLUSTER_SCOPED_KINDS:
            metadata["namespace"] = target_namespace

        if kind in ("ClusterRoleBinding", "RoleBinding"):
            for subject in obj.get("subjects") or []:
                if subject.get("kind") == "ServiceAccount":
                    subject["namespace"] = target_namespace
        return obj


def _merge_args(existing: Iterable[str], overrides: Dict[str, str]) -> List[str]:
    """Override "--key=value" style args, keeping the original order."""
    args = []
    seen = set()
    for arg in existing:
        key = arg.split("=", 1)[0]
        if key in overrides:
            args.append(f"{key}={overrides[key]}")
            seen.add(key)
        else:
            args.append(arg)
    for key, value in overrides.items():
        if key not in seen:
            args.append(f"{key}={value}")
    return args


def _merge_env(
    existing: List[Dict[str, Any]], overrides: Dict[str, str]
) -> List[Dict[str, Any]]:
    env = [dict(e) for e in existing]
    names = {e.get("name"): e for e in env}
    for name, value in overrides.items():
        if name in names:
            names[name].pop("valueFrom", None)
            names[name]["value"] = value
        else:
            env.append({"name": name, "value": value})
    return env


def customize_deployment(obj: Dict[str, Any], deployment: DeploymentSpec) -> None:
    spec = obj.setdefault("spec", {})
    if deployment.replicas is not None:
        spec["replicas"] = deployment.replicas

    pod_spec = spec.setdefault("template", {}).setdefault("spec", {})
    if deployment.node_selector:
        pod_spec["nodeSelector"] = dict(deployment.node_selector)
    if deployment.tolerations:
        pod_spec["tolerations"] = [dict(t) for t in deployment.tolerations]

    overrides = {c.name: c for c in deployment.containers}
    for container in pod_spec.get("containers") or []:
        override = overrides.get(container.get("name"))
        if override is None:
            continue
        if override.image_url:
            container["image"] = override.image_url
        if override.args:
            container["args"] = _merge_args(container.get("args") or [], override.args)
        if override.env:
            container["env"] = _merge_env(container.get("env") or [], override.env)
        if override.resources is not None:
            container["resources"] = copy.deepcopy(override.resources)


def customize_objects_fn(provider: Provider) -> ObjectFn:
    """Build the object customization function for a provider's spec."""
    deployment: Optional[DeploymentSpec] = provider.spec.deployment

    def customize(obj: Dict[str, Any]) -> Dict[str, Any]:
        if deployment is not None and obj.get("kind") == DEPLOYMENT_KIND:
            customize_deployment(obj, deployment)
        return obj

    return customize
