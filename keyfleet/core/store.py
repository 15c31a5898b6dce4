# keyfleet/core/store.py
"""
Desired-state store - read-only queries used by the engine
"""

from typing import List, Optional
from sqlalchemy.orm import Session

from keyfleet.database.models import Host, User, Grant, Group, GroupGrant, UserKey, HostKey


class DesiredStateStore:
    """
    Read-only view over the administrators' tables

    Bound to one session; the engine opens one store per host pipeline.
    """

    def __init__(self, db: Session):
        self.db = db

    def list_hosts(self) -> List[Host]:
        return self.db.query(Host).order_by(Host.id).all()

    def list_host_ids(self) -> List[int]:
        return [row[0] for row in self.db.query(Host.id).order_by(Host.id).all()]

    def get_host(self, host_id: int) -> Optional[Host]:
        return self.db.get(Host, host_id)

    def list_grants(self, host_id: int) -> List[Grant]:
        return self.db.query(Grant).filter(Grant.host_id == host_id).order_by(Grant.id).all()

    def list_group_grants(self, host_id: int) -> List[GroupGrant]:
        return self.db.query(GroupGrant).filter(GroupGrant.host_id == host_id).order_by(GroupGrant.id).all()

    def get_group(self, group_id: int) -> Optional[Group]:
        return self.db.get(Group, group_id)

    def get_user(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def list_user_keys(self, user_id: int) -> List[UserKey]:
        return self.db.query(UserKey).filter(UserKey.user_id == user_id).order_by(UserKey.id).all()

    def list_host_keys(self, host_id: int) -> List[HostKey]:
        return self.db.query(HostKey).filter(HostKey.host_id == host_id).order_by(HostKey.id).all()

    def list_all_user_keys(self) -> List[UserKey]:
        return self.db.query(UserKey).order_by(UserKey.id).all()
