import asyncio

from keyfleet.core.orchestrator import FleetOrchestrator
from keyfleet.database.models import ArtifactKind
from keyfleet.schemas.deploy import DeployState
from keyfleet.schemas.report import HostOutcome

from conftest import new_ed25519

HOME = ".ssh/authorized_keys"


def seed_host(seed, name, users=("alice",)):
    host = seed.host(name)
    for username in users:
        user = seed.user(f"{username}-{name}")
        seed.key(user)
        seed.grant(user, host)
    return host


def test_second_run_is_noop(orchestrator, transport, seed):
    host = seed.host("web-01")
    alice = seed.user("alice")
    seed.key(alice)
    seed.key(alice)
    seed.grant(alice, host, options="no-pty")
    seed.grant(seed.user("bob", enabled=False), host)

    first = asyncio.run(orchestrator.run_once())
    entry = first.for_host(host.id)
    assert entry.outcome == HostOutcome.COMMITTED
    live = transport.live(host.hostname)
    assert len(live.splitlines()) == 2
    assert all(line.startswith("no-pty ssh-ed25519 ") for line in live.splitlines())
    assert entry.fingerprint == orchestrator.state.get_record(host.id, ArtifactKind.AUTHORIZED_KEYS).fingerprint

    writes = len(transport.ops("write"))
    second = asyncio.run(orchestrator.run_once())
    assert second.for_host(host.id).outcome == HostOutcome.NOOP
    assert len(transport.ops("write")) == writes
    assert transport.live(host.hostname) == live


def test_disabling_a_user_removes_their_keys(orchestrator, transport, seed):
    host = seed.host("web-01")
    alice = seed.user("alice")
    bob = seed.user("bob")
    seed.key(alice)
    bob_key = seed.key(bob)
    seed.grant(alice, host)
    seed.grant(bob, host)
    asyncio.run(orchestrator.run_once())
    assert bob_key.key_base64 in transport.live(host.hostname)

    seed.set_enabled(bob, False)
    report = asyncio.run(orchestrator.run_once())

    assert report.for_host(host.id).outcome == HostOutcome.COMMITTED
    assert bob_key.key_base64 not in transport.live(host.hostname)
    assert len(transport.live(host.hostname).splitlines()) == 1


def test_lockout_is_held_until_approved(orchestrator, transport, seed):
    host = seed.host("web-01")
    alice = seed.user("alice")
    seed.key(alice)
    seed.grant(alice, host)
    asyncio.run(orchestrator.run_once())
    before = transport.live(host.hostname)

    seed.set_enabled(alice, False)
    held = asyncio.run(orchestrator.run_once())
    entry = held.for_host(host.id)
    assert entry.outcome == HostOutcome.MANUAL_REVIEW_REQUIRED
    assert "1 to 0" in entry.message
    assert transport.live(host.hostname) == before

    approved = asyncio.run(orchestrator.run_once(approved_host_ids=[host.id]))
    assert approved.for_host(host.id).outcome == HostOutcome.COMMITTED
    assert transport.live(host.hostname) == "\n"


def test_populated_live_file_without_record_is_held(orchestrator, transport, seed):
    host = seed.host("web-01")
    alice = seed.user("alice")
    seed.key(alice, key_type="ssh-ed25519", key_base64="AAAA")
    seed.grant(alice, host)
    existing = f"ssh-ed25519 {new_ed25519()[1]} ops\nssh-ed25519 {new_ed25519()[1]} backup\n"
    transport.files[(host.hostname, HOME)] = existing.encode()

    entry = asyncio.run(orchestrator.run_once()).for_host(host.id)

    assert entry.outcome == HostOutcome.MANUAL_REVIEW_REQUIRED
    assert "2 to 0" in entry.message
    assert [r.reason for r in entry.rejected_keys] == ["malformed_payload"]
    assert transport.live(host.hostname) == existing
    assert transport.ops("write") == []

    approved = asyncio.run(orchestrator.run_once(approved_host_ids=[host.id]))
    assert approved.for_host(host.id).outcome == HostOutcome.COMMITTED
    assert transport.live(host.hostname) == "\n"


def test_unreadable_host_without_record_is_held(orchestrator, transport, seed):
    host = seed.host("web-01")
    transport.unreachable.add(host.hostname)

    entry = asyncio.run(orchestrator.run_once()).for_host(host.id)

    assert entry.outcome == HostOutcome.MANUAL_REVIEW_REQUIRED
    assert "could not be read" in entry.message
    assert transport.ops("write") == []


def test_comment_only_live_file_may_be_emptied(orchestrator, transport, seed):
    host = seed.host("web-01")
    transport.files[(host.hostname, HOME)] = b"# provisioned by cloud-init\n\n"

    entry = asyncio.run(orchestrator.run_once()).for_host(host.id)

    assert entry.outcome == HostOutcome.COMMITTED
    assert transport.live(host.hostname) == "\n"


def test_failures_are_isolated_per_host(orchestrator, transport, seed):
    good = seed_host(seed, "good")
    grouped = seed_host(seed, "grouped")
    seed.group_grant(grouped, "ops")
    down = seed_host(seed, "down")
    transport.unreachable.add(down.hostname)

    report = asyncio.run(orchestrator.run_once([good.id, grouped.id, down.id, 404]))

    assert len(report.hosts) == 4
    assert report.for_host(good.id).outcome == HostOutcome.COMMITTED
    assert report.for_host(grouped.id).reason == "unsupported_group_grant"
    assert report.for_host(down.id).reason == "transport_failure"
    assert report.for_host(404).reason == "unknown_host"
    assert report.counts() == {"noop": 0, "committed": 1, "failed": 3, "manual_review_required": 0}
    assert not report.ok
    assert transport.live(down.hostname) is None


def test_concurrency_is_bounded(session_factory, transport, seed, test_settings):
    settings = test_settings.model_copy(update={"MAX_CONCURRENCY": 2})
    orchestrator = FleetOrchestrator(session_factory, transport, settings)
    hosts = [seed_host(seed, f"h{i}") for i in range(6)]
    transport.delay = 0.05

    report = asyncio.run(orchestrator.run_once())

    assert report.counts()["committed"] == len(hosts)
    assert 1 <= transport.max_in_flight <= 2


def test_cancellation_reports_in_flight_hosts(orchestrator, transport, seed):
    host = seed_host(seed, "slow")

    async def scenario():
        cancel = asyncio.Event()
        transport.gate = asyncio.Event()
        transport.write_started = asyncio.Event()
        run = asyncio.create_task(orchestrator.run_once(cancel_event=cancel))
        await transport.write_started.wait()
        cancel.set()
        return await run

    report = asyncio.run(scenario())

    assert report.cancelled
    assert report.for_host(host.id).outcome == HostOutcome.FAILED
    assert report.for_host(host.id).reason == "cancelled"
    assert transport.live(host.hostname) is None
    assert orchestrator.state.get_lease(host.id) is None


def test_cancellation_after_replace_reports_commit(orchestrator, transport, seed):
    host = seed_host(seed, "web-01")

    async def scenario():
        cancel = asyncio.Event()
        # Only the post-commit read targets the live path
        transport.hold_reads_of = HOME
        transport.read_gate = asyncio.Event()
        transport.read_started = asyncio.Event()
        run = asyncio.create_task(orchestrator.run_once(cancel_event=cancel))
        await transport.read_started.wait()
        cancel.set()
        return await run

    report = asyncio.run(scenario())
    entry = report.for_host(host.id)

    assert report.cancelled
    assert entry.outcome == HostOutcome.COMMITTED
    assert entry.artifacts[0].state == DeployState.COMMITTED
    assert transport.live(host.hostname).startswith("ssh-ed25519 ")
    assert orchestrator.state.get_lease(host.id) is None
    assert orchestrator.state.get_record(host.id, ArtifactKind.AUTHORIZED_KEYS) is None

    transport.hold_reads_of = None
    rerun = asyncio.run(orchestrator.run_once())
    assert rerun.for_host(host.id).outcome == HostOutcome.COMMITTED
    assert orchestrator.state.get_record(host.id, ArtifactKind.AUTHORIZED_KEYS) is not None


def test_rejected_keys_are_reported(orchestrator, seed):
    host = seed.host("web-01")
    alice = seed.user("alice")
    seed.key(alice)
    seed.key(alice, key_type="ssh-dss", key_base64="AAAAB3NzaC1kc3M=")
    seed.grant(alice, host)

    entry = asyncio.run(orchestrator.run_once()).for_host(host.id)
    assert entry.outcome == HostOutcome.COMMITTED
    assert [r.reason for r in entry.rejected_keys] == ["unsupported_key_type"]


def test_known_hosts_deployed_when_configured(session_factory, transport, seed, test_settings):
    settings = test_settings.model_copy(update={"KNOWN_HOSTS_REMOTE_PATH": ".ssh/known_hosts"})
    orchestrator = FleetOrchestrator(session_factory, transport, settings)
    host = seed_host(seed, "web-01")
    seed.host_key(host)

    entry = asyncio.run(orchestrator.run_once()).for_host(host.id)

    assert [a.kind for a in entry.artifacts] == [ArtifactKind.AUTHORIZED_KEYS, ArtifactKind.KNOWN_HOSTS]
    assert transport.live(host.hostname, ".ssh/known_hosts").startswith(f"{host.hostname},web-01 ssh-ed25519 ")


def test_rollback_restores_previous_file(orchestrator, transport, seed):
    host = seed.host("web-01")
    alice = seed.user("alice")
    seed.key(alice)
    seed.grant(alice, host)

    assert asyncio.run(orchestrator.rollback(host.id)).reason == "no_previous_deployment"

    asyncio.run(orchestrator.run_once())
    first = transport.live(host.hostname)
    seed.key(alice)
    asyncio.run(orchestrator.run_once())
    assert transport.live(host.hostname) != first

    entry = asyncio.run(orchestrator.rollback(host.id))
    assert entry.outcome == HostOutcome.COMMITTED
    assert transport.live(host.hostname) == first

    # Desired state still has two keys, so the next run converges forward again
    assert asyncio.run(orchestrator.run_once()).for_host(host.id).outcome == HostOutcome.COMMITTED


def test_rollback_unknown_host(orchestrator):
    entry = asyncio.run(orchestrator.rollback(12345))
    assert entry.outcome == HostOutcome.FAILED
    assert entry.reason == "unknown_host"
