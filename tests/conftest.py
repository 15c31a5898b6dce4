# tests/conftest.py

import asyncio
from typing import Dict, Optional, Set, Tuple

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from sqlalchemy.orm import sessionmaker

from keyfleet.config import Settings
from keyfleet.core.errors import TransportError
from keyfleet.core.orchestrator import FleetOrchestrator
from keyfleet.core.transport import RemoteTransport
from keyfleet.database.models import Group, GroupGrant, Grant, Host, HostKey, User, UserKey
from keyfleet.database.session import build_engine, init_db


def _openssh(private_key) -> Tuple[str, str]:
    line = private_key.public_key().public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    ).decode("ascii")
    key_type, key_base64 = line.split()[:2]
    return key_type, key_base64


def new_ed25519() -> Tuple[str, str]:
    return _openssh(ed25519.Ed25519PrivateKey.generate())


def new_ecdsa() -> Tuple[str, str]:
    return _openssh(ec.generate_private_key(ec.SECP256R1()))


def new_rsa() -> Tuple[str, str]:
    return _openssh(rsa.generate_private_key(public_exponent=65537, key_size=2048))


class FakeTransport(RemoteTransport):
    """In-memory hosts: files keyed by (hostname, path)"""

    def __init__(self):
        self.files: Dict[Tuple[str, str], bytes] = {}
        self.calls = []
        self.write_failures = 0
        self.unreachable: Set[str] = set()
        self.corrupt_staged_reads = False
        self.fail_replace = False
        self.delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.write_started: Optional[asyncio.Event] = None
        self.hold_reads_of: Optional[str] = None
        self.read_gate: Optional[asyncio.Event] = None
        self.read_started: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0

    def live(self, hostname: str, path: str = ".ssh/authorized_keys") -> Optional[str]:
        data = self.files.get((hostname, path))
        return data.decode("utf-8") if data is not None else None

    def ops(self, op: str):
        return [c for c in self.calls if c[0] == op]

    def _check_reachable(self, address):
        if address.hostname in self.unreachable:
            raise TransportError(f"{address}: connection refused")

    async def write(self, address, path, data, timeout):
        self.calls.append(("write", address.hostname, path))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.write_started is not None:
                self.write_started.set()
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            self._check_reachable(address)
            if self.write_failures:
                self.write_failures -= 1
                raise TransportError(f"{address}: connection reset")
            self.files[(address.hostname, path)] = data
        finally:
            self.in_flight -= 1

    async def read(self, address, path, timeout):
        self.calls.append(("read", address.hostname, path))
        if path == self.hold_reads_of and self.read_gate is not None:
            self.read_started.set()
            await self.read_gate.wait()
        self._check_reachable(address)
        if (address.hostname, path) not in self.files:
            raise TransportError(f"{address}: {path}: No such file or directory")
        data = self.files[(address.hostname, path)]
        if self.corrupt_staged_reads and path.endswith(".tmp"):
            return data + b"garbage\n"
        return data

    async def atomic_replace(self, address, tmp_path, final_path, timeout):
        self.calls.append(("replace", address.hostname, final_path))
        self._check_reachable(address)
        if self.fail_replace:
            raise TransportError(f"{address}: mv: cannot move")
        self.files[(address.hostname, final_path)] = self.files.pop((address.hostname, tmp_path))

    async def remove(self, address, path, timeout):
        self.calls.append(("remove", address.hostname, path))
        self.files.pop((address.hostname, path), None)


class Seeder:
    """Writes desired-state rows the way the administrators' store would"""

    def __init__(self, session_factory):
        self.db = session_factory()

    def _save(self, row):
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def host(self, name: str, hostname: Optional[str] = None, port: int = 22, username: str = "deploy") -> Host:
        return self._save(Host(name=name, hostname=hostname or f"{name}.example.net", port=port, username=username))

    def user(self, username: str, enabled: bool = True) -> User:
        return self._save(User(username=username, enabled=enabled))

    def key(self, user: User, keypair=None, comment: Optional[str] = None, key_type=None, key_base64=None) -> UserKey:
        if keypair is None and key_base64 is None:
            keypair = new_ed25519()
        if keypair is not None:
            key_type, key_base64 = keypair
        return self._save(UserKey(key_type=key_type, key_base64=key_base64, comment=comment, user_id=user.id))

    def grant(self, user: User, host: Host, options: Optional[str] = None, is_admin: bool = False) -> Grant:
        return self._save(Grant(user_id=user.id, host_id=host.id, options=options, is_admin=is_admin))

    def host_key(self, host: Host, keypair=None) -> HostKey:
        key_type, key_base64 = keypair or new_ed25519()
        return self._save(HostKey(key_type=key_type, key_base64=key_base64, host_id=host.id))

    def group_grant(self, host: Host, group_name: str) -> GroupGrant:
        group = self._save(Group(name=group_name))
        return self._save(GroupGrant(host_id=host.id, group_id=group.id))

    def set_enabled(self, user: User, enabled: bool) -> None:
        user.enabled = enabled
        self.db.commit()

    def delete(self, row) -> None:
        self.db.delete(row)
        self.db.commit()

    def close(self):
        self.db.close()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        ENGINE_ID="test-engine",
        OPERATION_TIMEOUT=5.0,
        RETRY_ATTEMPTS=3,
        RETRY_BACKOFF_SECONDS=0.0,
        RETRY_BACKOFF_MAX_SECONDS=0.0,
        ALLOW_EMPTY_KNOWN_HOSTS=True,
        MAX_CONCURRENCY=4,
    )


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'keyfleet.db'}")
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False)
    engine.dispose()


@pytest.fixture
def seed(session_factory):
    seeder = Seeder(session_factory)
    yield seeder
    seeder.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def orchestrator(session_factory, transport, test_settings):
    return FleetOrchestrator(session_factory, transport, test_settings)
