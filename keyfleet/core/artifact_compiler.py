# keyfleet/core/artifact_compiler.py
"""
Artifact Compiler
Renders resolved grants into authorized_keys and host keys into known_hosts
"""

import hashlib
from typing import List, Optional
import logging

from keyfleet.database.models import ArtifactKind, Host
from keyfleet.schemas.deploy import CompiledArtifact
from keyfleet.schemas.grants import ResolvedGrant, ResolvedGrantSet
from .errors import KeyMaterialError, ResolveError, ResolveErrorReason
from .key_validator import KeyValidator, key_validator
from .store import DesiredStateStore

logger = logging.getLogger(__name__)


def content_fingerprint(content: str) -> str:
    """Fingerprint used to detect artifact changes between deployments"""
    return "sha256:" + hashlib.sha256(content.encode("utf-8")).hexdigest()


def render_lines(lines: List[str]) -> str:
    """Newline-terminated text; an empty artifact is a single newline"""
    return "\n".join(lines) + "\n"


def make_artifact(host_id: int, kind: ArtifactKind, lines: List[str]) -> CompiledArtifact:
    content = render_lines(lines)
    return CompiledArtifact(
        host_id=host_id,
        kind=kind,
        content=content,
        fingerprint=content_fingerprint(content),
        line_count=len(lines),
    )


def known_hosts_patterns(host: Host) -> str:
    """Host pattern list, bracketed when the port is not 22"""
    names = [host.hostname]
    if host.name and host.name != host.hostname:
        names.append(host.name)
    if host.port and host.port != 22:
        names = [f"[{name}]:{host.port}" for name in names]
    return ",".join(names)


class ArtifactCompiler:
    """
    Artifact Compiler

    Output depends only on its input; identical input yields byte-identical
    text.
    """

    def __init__(self, store: Optional[DesiredStateStore] = None, validator: Optional[KeyValidator] = None):
        self.store = store
        self.validator = validator or key_validator

    @staticmethod
    def authorized_keys_line(grant: ResolvedGrant) -> str:
        """`[options] keytype base64 [comment]`"""
        line = grant.key.to_line()
        if grant.options:
            line = f"{grant.options} {line}"
        return line

    def compile_authorized_keys(self, resolved: ResolvedGrantSet) -> CompiledArtifact:
        grants = sorted(resolved.grants, key=lambda g: g.sort_key)
        lines = [self.authorized_keys_line(g) for g in grants]
        return make_artifact(resolved.host_id, ArtifactKind.AUTHORIZED_KEYS, lines)

    def compile_known_hosts(self, host_id: int) -> CompiledArtifact:
        """
        known_hosts fragment for a host's trusted host keys
        A host without host keys compiles to an empty artifact
        """
        if self.store is None:
            raise RuntimeError("compile_known_hosts needs a desired-state store")

        host = self.store.get_host(host_id)
        if host is None:
            raise ResolveError(ResolveErrorReason.UNKNOWN_HOST, f"Host {host_id} does not exist", host_id)

        patterns = known_hosts_patterns(host)
        keys = {}
        for row in self.store.list_host_keys(host_id):
            try:
                key = self.validator.validate(row.key_type, row.key_base64, key_id=row.id)
            except KeyMaterialError as e:
                logger.warning(f"Host {host.name}: skipping host key {row.id}: {e}")
                continue
            keys.setdefault(key.fingerprint, key)

        lines = [
            f"{patterns} {key.to_line(include_comment=False)}"
            for key in sorted(keys.values(), key=lambda k: (k.algorithm.value, k.fingerprint))
        ]
        return make_artifact(host_id, ArtifactKind.KNOWN_HOSTS, lines)
