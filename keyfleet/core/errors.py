# keyfleet/core/errors.py
"""
Engine error taxonomy

Every error carries a machine-readable reason code that ends up in the run
report. Manual review is not an error: it is a plan state.
"""

from enum import Enum
from typing import Optional


class KeyErrorReason(str, Enum):
    UNSUPPORTED_KEY_TYPE = "unsupported_key_type"
    MALFORMED_PAYLOAD = "malformed_payload"
    DUPLICATE_KEY = "duplicate_key"


class ResolveErrorReason(str, Enum):
    UNKNOWN_HOST = "unknown_host"
    CONFLICTING_GRANT = "conflicting_grant"
    UNSUPPORTED_GROUP_GRANT = "unsupported_group_grant"
    INVALID_OPTIONS = "invalid_options"


class DeployErrorReason(str, Enum):
    TRANSPORT_FAILURE = "transport_failure"
    TIMEOUT = "timeout"
    VERIFICATION_MISMATCH = "verification_mismatch"
    COMMIT_FAILED = "commit_failed"
    POST_CONDITION_FAILED = "post_condition_failed"
    LEASE_CONTENTION = "lease_contention"
    UNTRUSTED_HOST = "untrusted_host"
    CANCELLED = "cancelled"


class KeyfleetError(Exception):
    """Base class for engine errors"""

    def __init__(self, reason: Enum, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message

    @property
    def code(self) -> str:
        return self.reason.value

    def __str__(self) -> str:
        return f"{self.reason.value}: {self.message}"


class KeyMaterialError(KeyfleetError):
    """
    Malformed, unsupported or duplicate SSH key material
    Recoverable: the offending key row is skipped
    """

    def __init__(self, reason: KeyErrorReason, message: str, key_id: Optional[int] = None):
        super().__init__(reason, message)
        self.key_id = key_id


class ResolveError(KeyfleetError):
    """Fatal for the resolution of one host"""

    def __init__(self, reason: ResolveErrorReason, message: str, host_id: Optional[int] = None):
        super().__init__(reason, message)
        self.host_id = host_id


class DeployError(KeyfleetError):
    """Deployment of one artifact to one host failed"""

    def __init__(self, reason: DeployErrorReason, message: str, host_id: Optional[int] = None):
        super().__init__(reason, message)
        self.host_id = host_id


class TransportError(Exception):
    """
    Remote transport call failed
    Transient: retried during staging and verification
    """

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out
