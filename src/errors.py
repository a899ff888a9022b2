"""
Errors raised by the provider lifecycle pipeline.

Every failure inside a reconciliation phase is wrapped into a PhaseError that
carries the condition type and reason the controller should surface on the
provider's status.
"""

SEVERITY_WARNING = "Warning"
SEVERITY_INFO = "Info"


class ProviderOperatorError(Exception):
    """Base class for all provider operator errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidVersionError(ProviderOperatorError, ValueError):
    """A string does not follow semantic version grammar."""


class MissingKeyError(ProviderOperatorError):
    """A config object lacks a required data key."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(message)


class NotFoundError(ProviderOperatorError):
    """A secret, config object, file or provider record does not exist."""


class RepositoryError(ProviderOperatorError):
    """A repository could not serve a request."""


class UnknownProviderError(ProviderOperatorError):
    """No registry configuration exists for a provider name and kind."""


class NoMatchingSeriesError(ProviderOperatorError):
    """No release series in the metadata covers the resolved version."""


class ContractIncompatibleError(ProviderOperatorError):
    """The matched release series declares an unsupported contract."""


class ComponentsFetchError(ProviderOperatorError):
    """Provider components could not be fetched or rendered."""


class InstallError(ProviderOperatorError):
    """Installing components failed."""


class InstallTimeoutError(InstallError):
    """Installing components did not finish before the deadline."""


class DeletionError(ProviderOperatorError):
    """Deleting previously installed components failed."""


class ProviderValidationError(ProviderOperatorError):
    """The provider object itself is invalid; retrying will not help."""


class ConfigurationConflictError(ProviderValidationError):
    """Both a label selector and a match-labels map were configured."""


class PhaseError(Exception):
    """A classified failure of a reconciliation phase."""

    def __init__(
        self,
        cause: BaseException,
        reason: str,
        condition_type: str,
        severity: str = SEVERITY_WARNING,
    ):
        self.cause = cause
        self.reason = reason
        self.condition_type = condition_type
        self.severity = severity
        super().__init__(str(cause))

    @property
    def retryable(self) -> bool:
        """False when the provider spec must change before a retry can succeed."""
        return not isinstance(self.cause, ProviderValidationError)

    def __str__(self) -> str:
        return str(self.cause)

