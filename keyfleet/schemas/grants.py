# keyfleet/schemas/grants.py
"""
Resolved grant schemas
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import List

from .keys import CanonicalKey, RejectedKey


class ResolvedGrant(BaseModel):
    """One authorized (user, key, options) tuple"""
    username: str
    key: CanonicalKey
    options: str = ""

    model_config = ConfigDict(frozen=True)

    @property
    def sort_key(self) -> tuple:
        return (self.username, self.key.fingerprint)


class ResolvedGrantSet(BaseModel):
    """
    Deduplicated, deterministically ordered grants for one host
    Ordered by username, then key fingerprint
    """
    host_id: int
    host_name: str
    login_username: str
    grants: List[ResolvedGrant] = Field(default_factory=list)
    rejected: List[RejectedKey] = Field(default_factory=list)
    admin_grant_count: int = Field(
        default=0,
        description="Administrator-tagged grant rows on the host, enabled or not"
    )
