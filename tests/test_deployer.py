import asyncio
import logging
import time
from datetime import datetime, timedelta

import pytest

from keyfleet.config import Settings
from keyfleet.core.artifact_compiler import make_artifact
from keyfleet.core.deployer import DeploymentDriver
from keyfleet.core.deployment_state import DeploymentStateRepository
from keyfleet.core.planner import ConvergencePlanner
from keyfleet.database.models import ArtifactKind, DeploymentLease
from keyfleet.schemas.deploy import DeployState, HostAddress

PATH = ".ssh/authorized_keys"


@pytest.fixture
def state(session_factory, test_settings):
    return DeploymentStateRepository(session_factory, test_settings)


@pytest.fixture
def driver(transport, state, test_settings):
    return DeploymentDriver(transport, state, test_settings)


def address(host_id=1, known_hosts="web-01 ssh-ed25519 AAAA\n"):
    return HostAddress(
        host_id=host_id, name="web-01", hostname="web-01.example.net",
        username="deploy", known_hosts=known_hosts,
    )


def replace_plan(test_settings, lines=("ssh-ed25519 AAAA alice",), last=None):
    artifact = make_artifact(1, ArtifactKind.AUTHORIZED_KEYS, list(lines))
    return ConvergencePlanner(test_settings).plan(1, artifact, last)


def test_successful_deployment(driver, transport, state, test_settings):
    plan = replace_plan(test_settings)
    result = asyncio.run(driver.apply(address(), plan))

    assert result.history == [DeployState.PENDING, DeployState.STAGED, DeployState.VERIFIED, DeployState.COMMITTED]
    assert result.committed
    assert transport.live("web-01.example.net") == plan.content
    assert result.replaced_at is not None
    assert [path for (_, _, path) in transport.ops("replace")] == [PATH]
    assert not [k for k in transport.files if k[1].endswith(".tmp")]

    record = state.get_record(1, ArtifactKind.AUTHORIZED_KEYS)
    assert record.fingerprint == plan.fingerprint
    assert state.get_lease(1) is None


def test_transient_stage_failure_is_retried(driver, transport, test_settings, caplog):
    transport.write_failures = 2
    with caplog.at_level(logging.WARNING, logger="keyfleet.core.deployer"):
        result = asyncio.run(driver.apply(address(), replace_plan(test_settings)))

    assert result.committed
    assert len(transport.ops("write")) == 3
    assert "stage attempt 1/3 failed" in caplog.text


def test_persistent_stage_failure_leaves_live_file(driver, transport, test_settings):
    transport.files[("web-01.example.net", PATH)] = b"old\n"
    transport.write_failures = 10

    result = asyncio.run(driver.apply(address(), replace_plan(test_settings)))

    assert result.state == DeployState.FAILED
    assert result.reason == "transport_failure"
    assert result.history == [DeployState.PENDING, DeployState.FAILED]
    assert len(transport.ops("write")) == test_settings.RETRY_ATTEMPTS
    assert transport.live("web-01.example.net") == "old\n"


def test_verification_mismatch_discards_staged_file(driver, transport, state, test_settings):
    transport.files[("web-01.example.net", PATH)] = b"old\n"
    transport.corrupt_staged_reads = True

    result = asyncio.run(driver.apply(address(), replace_plan(test_settings)))

    assert result.reason == "verification_mismatch"
    assert result.history[-2:] == [DeployState.STAGED, DeployState.FAILED]
    assert transport.ops("replace") == []
    assert transport.live("web-01.example.net") == "old\n"
    assert list(transport.files) == [("web-01.example.net", PATH)]
    assert state.get_record(1, ArtifactKind.AUTHORIZED_KEYS) is None


def test_commit_is_not_retried(driver, transport, state, test_settings):
    transport.fail_replace = True

    result = asyncio.run(driver.apply(address(), replace_plan(test_settings)))

    assert result.reason == "commit_failed"
    assert len(transport.ops("replace")) == 1
    assert result.history[-2:] == [DeployState.VERIFIED, DeployState.FAILED]
    assert result.replaced_at is None
    assert state.get_record(1, ArtifactKind.AUTHORIZED_KEYS) is None
    assert state.get_lease(1) is None


def test_timeout_is_reported(session_factory, transport):
    settings = Settings(_env_file=None, OPERATION_TIMEOUT=0.5, RETRY_ATTEMPTS=1,
                        RETRY_BACKOFF_SECONDS=0.0, ALLOW_EMPTY_KNOWN_HOSTS=True)
    transport.delay = 5.0
    driver = DeploymentDriver(transport, DeploymentStateRepository(session_factory, settings), settings)

    result = asyncio.run(driver.apply(address(), replace_plan(settings)))
    assert result.reason == "timeout"


def test_lease_contention(driver, transport, state, test_settings):
    assert state.acquire_lease(1, "other-engine:run")

    result = asyncio.run(driver.apply(address(), replace_plan(test_settings)))

    assert result.reason == "lease_contention"
    assert transport.calls == []
    assert state.get_lease(1)["holder"] == "other-engine:run"


def test_expired_lease_is_taken_over(driver, state, session_factory, test_settings):
    with session_factory() as db:
        past = datetime.utcnow() - timedelta(hours=1)
        db.add(DeploymentLease(host_id=1, holder="crashed:run", acquired_at=past, expires_at=past))
        db.commit()

    result = asyncio.run(driver.apply(address(), replace_plan(test_settings)))
    assert result.committed
    assert state.get_lease(1) is None


def test_manual_review_plan_is_skipped(driver, transport, state, test_settings):
    deployed = state.record_deployment(make_artifact(1, ArtifactKind.AUTHORIZED_KEYS, ["ssh-ed25519 AAAA a"]))
    plan = replace_plan(test_settings, lines=(), last=deployed)
    assert plan.manual_review_required

    result = asyncio.run(driver.apply(address(), plan))
    assert result.state == DeployState.SKIPPED
    assert transport.calls == []


def test_untrusted_host_is_not_contacted(session_factory, transport, test_settings):
    settings = test_settings.model_copy(update={"ALLOW_EMPTY_KNOWN_HOSTS": False})
    driver = DeploymentDriver(transport, DeploymentStateRepository(session_factory, settings), settings)

    result = asyncio.run(driver.apply(address(known_hosts="\n"), replace_plan(settings)))
    assert result.reason == "untrusted_host"
    assert transport.calls == []


def test_redeploy_keeps_previous_for_rollback(driver, state, test_settings):
    first = replace_plan(test_settings, lines=("ssh-ed25519 AAAA a",))
    asyncio.run(driver.apply(address(), first))
    second = replace_plan(test_settings, lines=("ssh-ed25519 AAAA a", "ssh-ed25519 BBBB b"),
                          last=state.get_record(1, ArtifactKind.AUTHORIZED_KEYS))
    asyncio.run(driver.apply(address(), second))

    record = state.get_record(1, ArtifactKind.AUTHORIZED_KEYS)
    assert record.fingerprint == second.fingerprint
    assert record.previous_fingerprint == first.fingerprint
    assert record.has_previous


def test_lease_obtained_after_timeout_is_released(session_factory, transport, test_settings, monkeypatch):
    settings = test_settings.model_copy(update={"OPERATION_TIMEOUT": 0.2})
    state = DeploymentStateRepository(session_factory, settings)
    driver = DeploymentDriver(transport, state, settings)
    acquire = state.acquire_lease

    def slow_acquire(host_id, holder, ttl_seconds=None):
        time.sleep(0.6)
        return acquire(host_id, holder, ttl_seconds)

    monkeypatch.setattr(state, "acquire_lease", slow_acquire)

    # asyncio.run waits for the worker thread before returning
    result = asyncio.run(driver.apply(address(), replace_plan(settings)))

    assert result.reason == "timeout"
    assert transport.calls == []
    assert state.get_lease(1) is None

    monkeypatch.setattr(state, "acquire_lease", acquire)
    assert asyncio.run(driver.apply(address(), replace_plan(settings))).committed
