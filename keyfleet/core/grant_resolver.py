# keyfleet/core/grant_resolver.py
"""
Grant Resolver
Computes the (user, key, options) tuples authorized on a host
"""

from typing import Dict, List, Optional, Set, Tuple
import logging

from keyfleet.database.models import Grant, User
from keyfleet.schemas.grants import ResolvedGrant, ResolvedGrantSet
from keyfleet.schemas.keys import CanonicalKey, RejectedKey
from .errors import KeyMaterialError, KeyErrorReason, ResolveError, ResolveErrorReason
from .key_validator import KeyValidator, key_validator
from .store import DesiredStateStore

logger = logging.getLogger(__name__)


def normalize_options(options: Optional[str]) -> str:
    """Stored options with surrounding whitespace removed, None as empty"""
    return (options or "").strip()


def key_owner_index(store: DesiredStateStore, validator: Optional[KeyValidator] = None) -> Dict[str, Set[int]]:
    """
    Key fingerprint -> ids of the users holding that key, across the whole store

    Rows that fail validation are left out; they never reach a host anyway.
    """
    validator = validator or key_validator
    owners: Dict[str, Set[int]] = {}
    for row in store.list_all_user_keys():
        try:
            key = validator.validate(row.key_type, row.key_base64)
        except KeyMaterialError:
            continue
        owners.setdefault(key.fingerprint, set()).add(row.user_id)
    return owners


class GrantResolver:
    """
    Grant Resolver

    Rules:
    1. Disabled users contribute no keys, whatever their grant rows say
    2. Duplicate grants for one user are merged only when their options match
    3. Group grants have no membership source and fail the host
    4. Bad or duplicated key rows are skipped and reported, never fatal
    5. Output is sorted by (username, key fingerprint)
    """

    def __init__(self, store: DesiredStateStore, validator: Optional[KeyValidator] = None):
        self.store = store
        self.validator = validator or key_validator

    def resolve(self, host_id: int) -> ResolvedGrantSet:
        """
        Resolve the grant set for a host

        Raises:
            ResolveError: unknown host, conflicting grants, group grants,
                or options that would break the file format
        """
        host = self.store.get_host(host_id)
        if host is None:
            raise ResolveError(ResolveErrorReason.UNKNOWN_HOST, f"Host {host_id} does not exist", host_id)

        self._reject_group_grants(host_id)

        grants = self.store.list_grants(host_id)
        admin_grant_count = sum(1 for g in grants if g.is_admin)
        per_user = self._effective_grants(host_id, grants)

        # Read in the same session as the grants so both come from one snapshot
        key_owners = key_owner_index(self.store, self.validator)

        rejected: List[RejectedKey] = []
        candidates: List[Tuple[str, CanonicalKey, str, int]] = []

        for user, options in per_user.values():
            for row in self.store.list_user_keys(user.id):
                try:
                    key = self.validator.validate(row.key_type, row.key_base64, row.comment, key_id=row.id)
                except KeyMaterialError as e:
                    logger.warning(f"Host {host.name}: skipping key {row.id} of {user.username}: {e}")
                    rejected.append(RejectedKey(
                        key_id=row.id, username=user.username, reason=e.code, detail=e.message
                    ))
                    continue

                # The store only enforces textual uniqueness; compare decoded material fleet-wide
                if len(key_owners.get(key.fingerprint, set()) | {user.id}) > 1:
                    logger.warning(f"Host {host.name}: key {row.id} of {user.username} is claimed by several users")
                    rejected.append(RejectedKey(
                        key_id=row.id,
                        username=user.username,
                        reason=KeyErrorReason.DUPLICATE_KEY.value,
                        detail="Key material is owned by more than one user",
                    ))
                    continue

                candidates.append((user.username, key, options, row.id))

        duplicates = self.validator.find_duplicates((username, key) for username, key, _, _ in candidates)

        resolved: Dict[Tuple[str, str], ResolvedGrant] = {}
        for username, key, options, key_id in candidates:
            if key.fingerprint in duplicates:
                owners = ", ".join(sorted(duplicates[key.fingerprint]))
                logger.warning(f"Host {host.name}: key {key.fingerprint} shared by {owners}, rejecting")
                rejected.append(RejectedKey(
                    key_id=key_id,
                    username=username,
                    reason=KeyErrorReason.DUPLICATE_KEY.value,
                    detail=f"Same key material granted to {owners}",
                ))
                continue
            # Same user listing the same key twice collapses to one line
            resolved.setdefault((username, key.fingerprint), ResolvedGrant(username=username, key=key, options=options))

        ordered = [resolved[k] for k in sorted(resolved)]

        logger.debug(f"Resolved {len(ordered)} keys for host {host.name} ({len(rejected)} rejected)")
        return ResolvedGrantSet(
            host_id=host.id,
            host_name=host.name,
            login_username=host.username,
            grants=ordered,
            rejected=rejected,
            admin_grant_count=admin_grant_count,
        )

    def _reject_group_grants(self, host_id: int) -> None:
        group_grants = self.store.list_group_grants(host_id)
        if not group_grants:
            return
        names = []
        for gg in group_grants:
            group = self.store.get_group(gg.group_id)
            names.append(group.name if group else f"#{gg.group_id}")
        raise ResolveError(
            ResolveErrorReason.UNSUPPORTED_GROUP_GRANT,
            f"Group grants are not supported (groups: {', '.join(names)})",
            host_id
        )

    def _effective_grants(self, host_id: int, grants: List[Grant]) -> Dict[int, Tuple[User, str]]:
        """One (user, options) per enabled user, keyed by user id"""
        per_user: Dict[int, Tuple[User, str]] = {}
        for grant in grants:
            user = self.store.get_user(grant.user_id)
            if user is None:
                logger.warning(f"Grant {grant.id} on host {host_id} references missing user {grant.user_id}")
                continue
            if not user.enabled:
                continue

            options = normalize_options(grant.options)
            if "\n" in options or "\r" in options:
                raise ResolveError(
                    ResolveErrorReason.INVALID_OPTIONS,
                    f"Options of grant {grant.id} for {user.username} contain a line break",
                    host_id
                )

            existing = per_user.get(user.id)
            if existing is not None and existing[1] != options:
                raise ResolveError(
                    ResolveErrorReason.CONFLICTING_GRANT,
                    f"User {user.username} has conflicting grants: {existing[1]!r} vs {options!r}",
                    host_id
                )
            per_user[user.id] = (user, options)
        return per_user
