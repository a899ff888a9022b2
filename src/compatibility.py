"""
Contract compatibility between provider releases and this operator.

A provider's metadata.yaml declares release series; each series covers one
major.minor line and names the contract it implements. Only providers whose
release series declares a supported contract can be installed.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from errors import (
    ContractIncompatibleError,
    InvalidVersionError,
    NoMatchingSeriesError,
)
from validation import validate_against_schema
from versions import SemanticVersion, parse_semantic

logger = logging.getLogger(__name__)

# Contract implemented by the host environment
HOST_CONTRACT = "v1beta1"

# Contracts accepted from provider release series
COMPATIBLE_CONTRACTS = ("v1alpha4", "v1beta1")

CONTRACT_INCOMPATIBLE_MESSAGE = (
    "capi operator is only compatible with {host} providers, "
    "detected {contract} for provider {provider}."
)

METADATA_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "apiVersion": {"type": "string"},
        "kind": {"type": "string"},
        "releaseSeries": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["major", "minor", "contract"],
                "properties": {
                    "major": {"type": "integer", "minimum": 0},
                    "minor": {"type": "integer", "minimum": 0},
                    "contract": {"type": "string"},
                },
            },
        },
    },
}


@dataclass(frozen=True)
class ReleaseSeries:
    """A major.minor release line sharing one contract."""

    major: int
    minor: int
    contract: str

    def contains(self, version: SemanticVersion) -> bool:
        return version.major == self.major and version.minor == self.minor


@dataclass
class Metadata:
    """Decoded provider metadata document."""

    api_version: str = ""
    kind: str = ""
    release_series: List[ReleaseSeries] = field(default_factory=list)

    def series_for(self, version: SemanticVersion) -> Optional[ReleaseSeries]:
        for series in self.release_series:
            if series.contains(version):
                return series
        return None


def decode_metadata(raw: bytes, provider_name: str = "") -> Metadata:
    """
    Decode a metadata.yaml document.

    Raises:
        ValueError: If the document is not valid YAML or does not match
            the metadata schema.
    """
    try:
        document = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ValueError(
            f"error decoding metadata.yaml for provider {provider_name!r}: {e}"
        )

    is_valid, error = validate_against_schema(document, METADATA_SCHEMA)
    if not is_valid:
        raise ValueError(
            f"error decoding metadata.yaml for provider {provider_name!r}: {error}"
        )

    return Metadata(
        api_version=document.get("apiVersion", ""),
        kind=document.get("kind", ""),
        release_series=[
            ReleaseSeries(
                major=item["major"], minor=item["minor"], contract=item["contract"]
            )
            for item in document.get("releaseSeries") or []
        ],
    )


def resolve_contract(raw_metadata: bytes, version: str, provider_name: str) -> str:
    """
    Determine the contract of the release series covering version.

    Args:
        raw_metadata: Content of the provider's metadata.yaml
        version: The resolved provider version
        provider_name: Provider name, used in error messages

    Returns:
        The contract declared by the matching release series.

    Raises:
        ValueError: If the metadata cannot be decoded.
        InvalidVersionError: If version is not a semantic version.
        NoMatchingSeriesError: If no release series covers version.
        ContractIncompatibleError: If the contract is not supported.
    """
    metadata = decode_metadata(raw_metadata, provider_name)

    try:
        current = parse_semantic(version)
    except InvalidVersionError as e:
        raise InvalidVersionError(
            f"failed to parse current version for the {provider_name} provider: {e}"
        )

    series = metadata.series_for(current)
    if series is None:
        raise NoMatchingSeriesError(
            f"invalid provider metadata: version {version} for the provider "
            f"{provider_name} does not match any release series"
        )

    if series.contract not in COMPATIBLE_CONTRACTS:
        raise ContractIncompatibleError(
            CONTRACT_INCOMPATIBLE_MESSAGE.format(
                host=HOST_CONTRACT, contract=series.contract, provider=provider_name
            )
        )

    logger.debug(
        f"Provider {provider_name} version {version} implements contract "
        f"{series.contract}"
    )
    return series.contract
