from enum import Enum
from typing import Optional


class RemoteErrorKind(str, Enum):
    CONNECTIVITY = "connectivity"
    TIMEOUT = "timeout"
    CREDENTIAL = "credential"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"

    @property
    def transient(self) -> bool:
        return self in _TRANSIENT_KINDS

    @property
    def credential(self) -> bool:
        return self is RemoteErrorKind.CREDENTIAL


_TRANSIENT_KINDS = frozenset({
    RemoteErrorKind.CONNECTIVITY,
    RemoteErrorKind.TIMEOUT,
    RemoteErrorKind.CREDENTIAL,
    RemoteErrorKind.RATE_LIMITED,
    RemoteErrorKind.SERVER,
})

# error.code values the ledger uses for credential/verification failures
CREDENTIAL_ERROR_CODES = frozenset({
    "expired_delegation",
    "signature_verification_failed",
    "malformed_certificate",
})


class WagerError(Exception):
    """Base for every error surfaced to callers of the orchestrator."""

    http_status = 400

    def __init__(self, detail: str = "", wager_id: Optional[str] = None):
        super().__init__(detail or self.__class__.__name__)
        self.detail = detail or self.__class__.__name__
        self.wager_id = wager_id


class InsufficientFundsError(WagerError):
    http_status = 402


class InvalidStakeError(WagerError):
    http_status = 422


class InvalidParametersError(WagerError):
    http_status = 422


class SessionBusyError(WagerError):
    http_status = 409


class ActiveSessionExistsError(SessionBusyError):
    pass


class InvalidIndexError(WagerError):
    http_status = 422


class NotActiveError(WagerError):
    http_status = 409


class DemoModeError(WagerError):
    http_status = 403


class UnknownWagerError(WagerError):
    http_status = 404


class InvalidTransitionError(WagerError):
    http_status = 409


class DebitFailedError(WagerError):
    """Debit could not be confirmed; no funds moved."""

    http_status = 502


class CreditUnconfirmedError(WagerError):
    """Credit outcome unknown after retries; the wager needs reconciliation."""

    http_status = 202


class RemoteError(Exception):
    def __init__(self, kind: RemoteErrorKind, detail: str = "", status_code: Optional[int] = None):
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return self.kind.transient
