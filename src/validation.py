"""
Validation - admission checks for provider specs and JSON-schema helpers.

Provider specs are validated before they are stored and again before a
reconciliation pass starts, so malformed providers never reach the pipeline.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

from errors import ConfigurationConflictError, InvalidVersionError, ProviderValidationError
from provider import ProviderSpec
from repositories.memory import parse_selector
from versions import parse_semantic

logger = logging.getLogger(__name__)

SELECTOR_CONFLICT_MESSAGE = (
    "can't use selector and matchlabels, only one option is allowed"
)


def validate_against_schema(
    document: Any, schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a decoded document against a JSON Schema (Draft 7).

    Args:
        document: The decoded YAML/JSON document
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = list(validator.iter_errors(document))

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def default_provider_spec(spec: ProviderSpec, namespace: str) -> ProviderSpec:
    """Fill namespaces left empty on references with the provider's namespace."""
    if spec.secret_name and not spec.secret_namespace:
        spec.secret_namespace = namespace

    fetch_config = spec.fetch_config
    if (
        fetch_config is not None
        and fetch_config.config_map is not None
        and not fetch_config.config_map.namespace
    ):
        fetch_config.config_map.namespace = namespace

    return spec


def validate_provider_spec(spec: ProviderSpec) -> List[str]:
    """
    Run admission checks on a provider spec.

    Returns:
        A list of field error messages; empty if the spec is valid.
    """
    errors: List[str] = []

    if spec.version:
        try:
            parse_semantic(spec.version)
        except InvalidVersionError as e:
            errors.append(f"spec.version: invalid semantic version: {e}")

    fetch_config = spec.fetch_config
    if fetch_config is not None and fetch_config.selector and fetch_config.match_labels:
        errors.append(f"spec.fetch_config: {SELECTOR_CONFLICT_MESSAGE}")

    if fetch_config is not None and fetch_config.selector:
        try:
            parse_selector(fetch_config.selector)
        except ValueError as e:
            errors.append(f"spec.fetch_config.selector: {e}")

    if fetch_config is not None and fetch_config.url and (
        fetch_config.config_map is not None
        or fetch_config.selector
        or fetch_config.match_labels
    ):
        errors.append(
            "spec.fetch_config: url can't be combined with a config object reference"
        )

    return errors


def check_provider_spec(spec: ProviderSpec) -> None:
    """
    Raise if the provider spec fails admission checks.

    Raises:
        ConfigurationConflictError: If both selector and match_labels are set.
        ProviderValidationError: For any other admission failure.
    """
    fetch_config = spec.fetch_config
    if fetch_config is not None and fetch_config.selector and fetch_config.match_labels:
        raise ConfigurationConflictError(
            f"spec.fetch_config: {SELECTOR_CONFLICT_MESSAGE}"
        )

    errors = validate_provider_spec(spec)
    if errors:
        raise ProviderValidationError("; ".join(errors))
