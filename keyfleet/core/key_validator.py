# keyfleet/core/key_validator.py
"""
Key Material Validator
Parses and canonicalizes SSH public keys (RFC 4253 / RFC 5656 / OpenSSH
PROTOCOL.u2f wire formats) and computes OpenSSH SHA256 fingerprints
"""

import base64
import binascii
import hashlib
import logging
import struct
from typing import Dict, Hashable, Iterable, List, Optional, Set, Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from keyfleet.schemas.keys import KeyAlgorithm, CanonicalKey
from .errors import KeyMaterialError, KeyErrorReason

logger = logging.getLogger(__name__)


# Field layout of the decoded blob after the leading algorithm string
_LAYOUTS = {
    KeyAlgorithm.SSH_RSA: ("mpint", "mpint"),  # e, n
    KeyAlgorithm.SSH_ED25519: ("ed25519",),
    KeyAlgorithm.ECDSA_NISTP256: ("curve", "point"),
    KeyAlgorithm.ECDSA_NISTP384: ("curve", "point"),
    KeyAlgorithm.ECDSA_NISTP521: ("curve", "point"),
    KeyAlgorithm.SK_SSH_ED25519: ("ed25519", "application"),
    KeyAlgorithm.SK_ECDSA_NISTP256: ("curve", "point", "application"),
}

# Curve identifier and uncompressed point length per ECDSA algorithm
_CURVES = {
    KeyAlgorithm.ECDSA_NISTP256: ("nistp256", 65),
    KeyAlgorithm.ECDSA_NISTP384: ("nistp384", 97),
    KeyAlgorithm.ECDSA_NISTP521: ("nistp521", 133),
    KeyAlgorithm.SK_ECDSA_NISTP256: ("nistp256", 65),
}

# Security-key algorithms cryptography cannot load
_STRUCTURAL_ONLY = {KeyAlgorithm.SK_SSH_ED25519, KeyAlgorithm.SK_ECDSA_NISTP256}

_ALGORITHM_TAGS = {algorithm.value for algorithm in KeyAlgorithm}


def _read_string(blob: bytes, offset: int) -> Tuple[bytes, int]:
    """Read one uint32 length-prefixed field"""
    if offset + 4 > len(blob):
        raise ValueError("truncated length prefix")
    (length,) = struct.unpack(">I", blob[offset:offset + 4])
    end = offset + 4 + length
    if end > len(blob):
        raise ValueError(f"field of {length} bytes overruns the payload")
    return blob[offset + 4:end], end


def fingerprint_blob(blob: bytes) -> str:
    """OpenSSH style SHA256 fingerprint"""
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def normalize_comment(comment: Optional[str]) -> Optional[str]:
    if comment is None:
        return None
    collapsed = " ".join(comment.split())
    return collapsed or None


def split_options(line: str) -> Tuple[str, str]:
    """
    Split an authorized_keys line into (options, rest)

    Options end at the first whitespace outside double quotes. A line that
    starts with a recognized algorithm has no options.
    """
    line = line.strip()
    first = line.split(None, 1)[0] if line else ""
    if first in _ALGORITHM_TAGS:
        return "", line

    in_quotes = False
    escaped = False
    for index, char in enumerate(line):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            in_quotes = not in_quotes
        elif char.isspace() and not in_quotes:
            return line[:index], line[index:].strip()
    return line, ""


class KeyValidator:
    """
    Validates SSH public key material

    Pure: no I/O. Callers use the returned fingerprint for uniqueness checks.
    """

    def validate(
        self,
        key_type: str,
        key_base64: str,
        comment: Optional[str] = None,
        key_id: Optional[int] = None
    ) -> CanonicalKey:
        """
        Validate one key and return its canonical form

        Raises:
            KeyMaterialError: unsupported algorithm or malformed payload
        """
        try:
            algorithm = KeyAlgorithm((key_type or "").strip())
        except ValueError:
            raise KeyMaterialError(
                KeyErrorReason.UNSUPPORTED_KEY_TYPE,
                f"Unsupported key type '{key_type}'",
                key_id=key_id
            )

        payload = "".join((key_base64 or "").split())
        if not payload:
            raise KeyMaterialError(KeyErrorReason.MALFORMED_PAYLOAD, "Empty key payload", key_id=key_id)

        try:
            blob = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise KeyMaterialError(
                KeyErrorReason.MALFORMED_PAYLOAD,
                f"Payload is not valid base64: {e}",
                key_id=key_id
            )

        try:
            self._check_layout(algorithm, blob)
        except ValueError as e:
            raise KeyMaterialError(
                KeyErrorReason.MALFORMED_PAYLOAD,
                f"{algorithm.value} payload does not match its wire layout: {e}",
                key_id=key_id
            )

        canonical_b64 = base64.b64encode(blob).decode("ascii")

        if algorithm not in _STRUCTURAL_ONLY:
            try:
                serialization.load_ssh_public_key(f"{algorithm.value} {canonical_b64}".encode("ascii"))
            except (ValueError, UnsupportedAlgorithm) as e:
                raise KeyMaterialError(
                    KeyErrorReason.MALFORMED_PAYLOAD,
                    f"{algorithm.value} key material rejected: {e}",
                    key_id=key_id
                )

        return CanonicalKey(
            algorithm=algorithm,
            key_base64=canonical_b64,
            comment=normalize_comment(comment),
            fingerprint=fingerprint_blob(blob),
        )

    def parse_line(self, line: str) -> CanonicalKey:
        """Parse a `keytype base64 [comment]` line"""
        parts = line.strip().split(None, 2)
        if len(parts) < 2:
            raise KeyMaterialError(KeyErrorReason.MALFORMED_PAYLOAD, "Expected 'keytype base64 [comment]'")
        comment = parts[2] if len(parts) > 2 else None
        return self.validate(parts[0], parts[1], comment)

    def parse_authorized_line(self, line: str) -> Tuple[str, CanonicalKey]:
        """Parse an authorized_keys line that may carry an options prefix"""
        options, rest = split_options(line)
        return options, self.parse_line(rest)

    def parse_lines(self, text: str) -> Tuple[List[Tuple[str, CanonicalKey]], int]:
        """
        Parse a whole authorized_keys file

        Returns:
            Tuple of (parsed (options, key) pairs, number of unparseable lines)
        """
        parsed = []
        bad = 0
        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            try:
                parsed.append(self.parse_authorized_line(line))
            except KeyMaterialError as e:
                logger.debug(f"Skipping unparseable line: {e}")
                bad += 1
        return parsed, bad

    @staticmethod
    def find_duplicates(entries: Iterable[Tuple[Hashable, CanonicalKey]]) -> Dict[str, Set[Hashable]]:
        """
        Map fingerprints claimed by more than one owner to those owners
        The same owner listing a key twice is not a duplicate
        """
        owners: Dict[str, Set[Hashable]] = {}
        for owner, key in entries:
            owners.setdefault(key.fingerprint, set()).add(owner)
        return {fp: found for fp, found in owners.items() if len(found) > 1}

    def _check_layout(self, algorithm: KeyAlgorithm, blob: bytes) -> None:
        declared, offset = _read_string(blob, 0)
        if declared != algorithm.value.encode("ascii"):
            raise ValueError(f"blob encodes '{declared.decode('ascii', 'replace')}'")

        for field in _LAYOUTS[algorithm]:
            value, offset = _read_string(blob, offset)
            if field == "mpint":
                if not value:
                    raise ValueError("empty integer field")
            elif field == "ed25519":
                if len(value) != 32:
                    raise ValueError(f"ed25519 key is {len(value)} bytes, expected 32")
            elif field == "curve":
                expected_curve, _ = _CURVES[algorithm]
                if value != expected_curve.encode("ascii"):
                    raise ValueError(f"curve '{value.decode('ascii', 'replace')}' does not match {expected_curve}")
            elif field == "point":
                _, point_len = _CURVES[algorithm]
                if len(value) != point_len or value[0] != 0x04:
                    raise ValueError("EC point is not an uncompressed point of the expected size")
            elif field == "application":
                if not value.startswith(b"ssh:"):
                    raise ValueError("security key application must start with 'ssh:'")

        if offset != len(blob):
            raise ValueError(f"{len(blob) - offset} trailing bytes")


key_validator = KeyValidator()
