# keyfleet/schemas/keys.py
"""
SSH key material schemas
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from enum import Enum


class KeyAlgorithm(str, Enum):
    """Supported SSH public-key algorithms, anything else is rejected"""
    SSH_RSA = "ssh-rsa"
    SSH_ED25519 = "ssh-ed25519"
    ECDSA_NISTP256 = "ecdsa-sha2-nistp256"
    ECDSA_NISTP384 = "ecdsa-sha2-nistp384"
    ECDSA_NISTP521 = "ecdsa-sha2-nistp521"
    SK_SSH_ED25519 = "sk-ssh-ed25519@openssh.com"
    SK_ECDSA_NISTP256 = "sk-ecdsa-sha2-nistp256@openssh.com"


class CanonicalKey(BaseModel):
    """
    Validated public key in canonical form
    fingerprint is the OpenSSH SHA256 fingerprint of the decoded blob
    """
    algorithm: KeyAlgorithm
    key_base64: str
    comment: Optional[str] = None
    fingerprint: str

    model_config = ConfigDict(frozen=True)

    def to_line(self, include_comment: bool = True) -> str:
        """Single-line `keytype base64 [comment]` form"""
        line = f"{self.algorithm.value} {self.key_base64}"
        if include_comment and self.comment:
            line = f"{line} {self.comment}"
        return line


class RejectedKey(BaseModel):
    """Key row skipped during resolution"""
    key_id: Optional[int] = None
    username: Optional[str] = None
    reason: str = Field(..., examples=["malformed_payload", "duplicate_key"])
    detail: str
