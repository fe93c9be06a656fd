"""Error taxonomy for the provisioning pipeline and its connectors.

Connectors translate transport and provider failures into these types at
the boundary; the orchestrator decides per step which of them mean
"already happened" and which abort the run.
"""

from __future__ import annotations

from enum import Enum


class ProvisioningStep(str, Enum):
    PROFILE = "profile"
    SESSION_SIGNER = "session_signer"
    SAFE_WALLET = "safe_wallet"
    ALLOWANCES = "allowances"
    CLOB_CREDENTIALS = "clob_credentials"


class AlphascopeError(Exception):
    """Base class for every error raised by this package."""

    retryable: bool = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class TransientNetworkError(AlphascopeError):
    """Timeout, rate limit or transport hiccup. Safe to retry."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderConflictError(AlphascopeError):
    """The external side effect already exists."""


class SafeAlreadyDeployedError(ProviderConflictError):
    pass


class OnChainRevertError(AlphascopeError):
    def __init__(self, message: str, transaction_hash: str = ""):
        super().__init__(message)
        self.transaction_hash = transaction_hash


class InsufficientFundsError(AlphascopeError):
    pass


class ConfirmationTimeoutError(AlphascopeError):
    """Neither success nor failure was observed in time.

    The submitted transaction may still land. Callers re-run provisioning
    later and let the chain decide.
    """

    retryable = True

    def __init__(self, message: str, transaction_id: str = ""):
        super().__init__(message)
        self.transaction_id = transaction_id


class StoreUnavailableError(AlphascopeError):
    pass


class UnrecognizedResponseError(AlphascopeError):
    """A provider payload did not match the shape we parse."""


class AuthenticationError(AlphascopeError):
    pass


class RelayError(AlphascopeError):
    """Non-transient rejection by the meta-transaction relayer."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProvisioningError(AlphascopeError):
    """A provisioning step failed; wraps the underlying cause."""

    def __init__(self, step: ProvisioningStep, cause: BaseException):
        super().__init__(f"{step.value}: {cause}")
        self.step = step
        self.cause = cause

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return bool(getattr(self.cause, "retryable", False))

    @property
    def kind(self) -> str:
        return type(self.cause).__name__


class IdentityMismatchError(AlphascopeError):
    """Stored identity (custody or Safe address) disagrees with a fresh derivation."""


class NotProvisionedError(AlphascopeError):
    """The operation needs a user whose provisioning has completed."""


class SessionEndedError(AlphascopeError):
    """The user's session was ended (authentication lost) and its clients released."""
