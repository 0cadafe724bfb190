from enum import Enum, IntEnum
from typing import Optional, List


class KeyRole(str, Enum):
    OWNER = "owner"
    PAYER = "payer"   # Fee payer, never auto-generated


class UnlockStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    INITIALIZED = "INITIALIZED"
    FINALIZED = "FINALIZED"   # Terminal


class ConfirmationStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"   # Outcome unknown, re-fetch before acting again


class TimelockState(IntEnum):
    """State byte stored in the unlock-state account."""
    UNKNOWN = 0
    UNLOCKED = 1
    WAITING_FOR_TIMEOUT = 2


class UnlockError(Exception):
    """Base error. `stage` names the step of the run that failed."""

    def __init__(self, message: str = "", stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage

    @property
    def kind(self) -> str:
        return type(self).__name__


class KeyIntegrityError(UnlockError):
    pass

class MissingPayerError(UnlockError):
    pass

class InvalidKeyLengthError(UnlockError):
    pass

class MnemonicError(UnlockError):
    pass

class AddressMismatchError(UnlockError):
    pass

class UnlockStateError(UnlockError):
    pass

class OutcomeUnknownError(UnlockError):
    pass


class RpcError(UnlockError):
    """Non-transient JSON-RPC failure."""

    def __init__(self, message: str = "", code: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.code = code


class RpcTransientError(RpcError):
    pass


class TransactionRejectedError(UnlockError):
    """Deterministic rejection by the ledger. Never retried blindly."""

    # Markers the runtime emits when an account being created already exists
    ALREADY_INITIALIZED_MARKERS = ("already in use", "already initialized", "AccountAlreadyInitialized")

    def __init__(self, reason: str, logs: Optional[List[str]] = None,
                 signature: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(f"transaction rejected: {reason}", stage=stage)
        self.reason = reason
        self.logs = list(logs or [])
        self.signature = signature

    def looks_already_initialized(self) -> bool:
        haystack = " ".join([self.reason] + self.logs)
        return any(marker in haystack for marker in self.ALREADY_INITIALIZED_MARKERS)
