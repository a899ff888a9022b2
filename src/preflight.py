"""
Preflight checks run before any provider manifests are loaded.
"""

import logging
from typing import List, Optional

from errors import (
    InvalidVersionError,
    PhaseError,
    ProviderOperatorError,
    ProviderValidationError,
)
from provider import (
    FETCH_CONFIG_VALIDATION_ERROR_REASON,
    INCORRECT_VERSION_FORMAT_REASON,
    MORE_THAN_ONE_PROVIDER_INSTANCE_EXISTS_REASON,
    PREFLIGHT_CHECK_CONDITION,
    PROVIDER_INSTALLED_CONDITION,
    WAITING_FOR_CORE_PROVIDER_REASON,
    Provider,
    ProviderKind,
    mark_true,
    mark_waiting,
)
from validation import check_provider_spec
from versions import parse_semantic

logger = logging.getLogger(__name__)

DEFAULT_CORE_PROVIDER_WAIT = 60.0

WAITING_FOR_CORE_PROVIDER_MESSAGE = "Waiting for the core provider to be installed."


def _same_provider(a: Provider, b: Provider) -> bool:
    if a.id is not None and b.id is not None:
        return a.id == b.id
    return a.kind == b.kind and a.name == b.name and a.namespace == b.namespace


def run_preflight_checks(
    provider: Provider,
    provider_list: List[Provider],
    core_provider_wait: float = DEFAULT_CORE_PROVIDER_WAIT,
) -> Optional[float]:
    """
    Validate a provider against its own spec and its siblings.

    Args:
        provider: The provider being reconciled
        provider_list: Every stored provider, the reconciled one included
        core_provider_wait: Requeue delay while waiting for the core provider

    Returns:
        Seconds to wait before the next attempt, or None to continue.

    Raises:
        PhaseError: If a check fails; the condition type is always
            PreflightCheckPassed.
    """
    spec = provider.spec

    if spec.version:
        try:
            parse_semantic(spec.version)
        except InvalidVersionError as e:
            raise PhaseError(
                ProviderValidationError(
                    f"Version {spec.version} has invalid format: {e}"
                ),
                INCORRECT_VERSION_FORMAT_REASON,
                PREFLIGHT_CHECK_CONDITION,
            ) from e

    try:
        check_provider_spec(spec)
    except ProviderValidationError as e:
        raise PhaseError(
            e, FETCH_CONFIG_VALIDATION_ERROR_REASON, PREFLIGHT_CHECK_CONDITION
        ) from e

    siblings = [
        p for p in provider_list if not p.deleting and not _same_provider(p, provider)
    ]

    for other in siblings:
        if other.kind == provider.kind and other.name == provider.name:
            raise PhaseError(
                ProviderOperatorError(
                    f"There is already a {provider.kind.value} with name "
                    f"{provider.name} in namespace {other.namespace}. "
                    f"Only one is allowed."
                ),
                MORE_THAN_ONE_PROVIDER_INSTANCE_EXISTS_REASON,
                PREFLIGHT_CHECK_CONDITION,
            )

    core_providers = [p for p in siblings if p.kind == ProviderKind.CORE]

    if provider.kind == ProviderKind.CORE:
        if core_providers:
            raise PhaseError(
                ProviderOperatorError(
                    f"Only one instance of CoreProvider is allowed, found "
                    f"{core_providers[0].namespace}/{core_providers[0].name}"
                ),
                MORE_THAN_ONE_PROVIDER_INSTANCE_EXISTS_REASON,
                PREFLIGHT_CHECK_CONDITION,
            )
    elif not any(p.is_condition_true(PROVIDER_INSTALLED_CONDITION) for p in core_providers):
        logger.info(
            f"{provider.kind.value} {provider.namespace}/{provider.name} is waiting "
            f"for the core provider"
        )
        mark_waiting(
            provider,
            PREFLIGHT_CHECK_CONDITION,
            WAITING_FOR_CORE_PROVIDER_REASON,
            WAITING_FOR_CORE_PROVIDER_MESSAGE,
        )
        return core_provider_wait

    mark_true(provider, PREFLIGHT_CHECK_CONDITION)
    return None
