import json
import subprocess
from datetime import datetime, timezone

import pytest

import ocloud_rollback_release
from ocloud_rollback_errors import (
    ReleaseStoreError,
    RevisionNotFound,
    RollbackRejected,
    TransientError,
)
from ocloud_rollback_models import RevisionStatus
from ocloud_rollback_release import HelmReleaseStore, parse_helm_time

HISTORY = [
    {"revision": 3, "updated": "2026-01-01T12:00:00.123456789Z", "status": "failed",
     "chart": "app-1.2.0", "app_version": "1.2.0", "description": "Upgrade failed"},
    {"revision": 1, "updated": "2026-01-01T10:00:00Z", "status": "superseded",
     "chart": "app-1.0.0", "app_version": "1.0.0", "description": "Install complete"},
    {"revision": 4, "updated": "2026-01-01T13:00:00+02:00", "status": "deployed",
     "chart": "app-1.1.0", "app_version": "1.1.0", "description": "Rollback to 2"},
    {"revision": 2, "updated": "2026-01-01T11:00:00Z", "status": "superseded",
     "chart": "app-1.1.0", "app_version": "1.1.0", "description": "Upgrade complete"},
]


class FakeHelm:
    def __init__(self):
        self.commands = []
        self.responses = []
        self.raise_error = None

    def respond(self, returncode=0, stdout="", stderr=""):
        self.responses.append((returncode, stdout, stderr))

    def __call__(self, cmd, capture_output, text, timeout, check):
        self.commands.append((cmd, timeout))
        if self.raise_error is not None:
            raise self.raise_error
        returncode, stdout, stderr = self.responses.pop(0)
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


@pytest.fixture
def helm(monkeypatch):
    fake = FakeHelm()
    monkeypatch.setattr(ocloud_rollback_release.subprocess, "run", fake)
    return fake


@pytest.fixture
def releases(config):
    config.helm_bin = "helm"
    config.api_timeout = 30
    config.max_revisions = 10
    return HelmReleaseStore(config)


def test_parse_helm_time_variants():
    assert parse_helm_time("2026-01-01T12:00:00.123456789Z") == datetime(
        2026, 1, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
    assert parse_helm_time("2026-01-01T13:00:00+02:00") == datetime(2026, 1, 1, 11, tzinfo=timezone.utc)
    assert parse_helm_time("2026-01-01 13:00:00.5 +0100") == datetime(
        2026, 1, 1, 12, 0, 0, 500000, tzinfo=timezone.utc)
    assert parse_helm_time("") == datetime(1970, 1, 1, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        parse_helm_time("yesterday")


@pytest.mark.asyncio
async def test_history_is_sorted_newest_first(helm, releases, lineage):
    helm.respond(stdout=json.dumps(HISTORY))

    revisions = await releases.history(lineage)

    assert [r.id for r in revisions] == [4, 3, 2, 1]
    assert [r.status for r in revisions] == [
        RevisionStatus.DEPLOYED,
        RevisionStatus.FAILED,
        RevisionStatus.SUPERSEDED,
        RevisionStatus.SUPERSEDED,
    ]
    assert revisions[0].description == "Rollback to 2"
    cmd, _ = helm.commands[0]
    assert cmd == ["helm", "history", "ocloud-app", "-n", "ocloud", "--max", "10", "-o", "json"]


@pytest.mark.asyncio
async def test_history_of_unknown_release(helm, releases, lineage):
    helm.respond(returncode=1, stderr="Error: release: not found")

    with pytest.raises(RevisionNotFound):
        await releases.history(lineage)


@pytest.mark.asyncio
async def test_current_revision_from_status(helm, releases, lineage):
    helm.respond(stdout=json.dumps({
        "name": "ocloud-app",
        "version": 7,
        "info": {"status": "deployed", "last_deployed": "2026-01-01T10:00:00Z",
                 "description": "Rollback to 5"},
    }))

    current = await releases.current_revision(lineage)

    assert current.id == 7
    assert current.status == RevisionStatus.DEPLOYED
    assert current.description == "Rollback to 5"


@pytest.mark.asyncio
async def test_status_failure_is_transient(helm, releases, lineage):
    helm.respond(returncode=1, stderr="Error: Kubernetes cluster unreachable")

    with pytest.raises(ReleaseStoreError) as exc_info:
        await releases.current_revision(lineage)
    assert isinstance(exc_info.value, TransientError)


@pytest.mark.asyncio
async def test_rollback_command(helm, releases, lineage):
    helm.respond(stdout="Rollback was a success! Happy Helming!")

    await releases.rollback(lineage, 4, timeout=120)

    cmd, timeout = helm.commands[0]
    assert cmd == ["helm", "rollback", "ocloud-app", "4", "-n", "ocloud", "--wait", "--timeout=120s"]
    assert timeout == 150


@pytest.mark.asyncio
@pytest.mark.parametrize("stderr,error", [
    ("Error: another operation (install/upgrade/rollback) is in progress", RollbackRejected),
    ("Error: release: not found", RevisionNotFound),
    ("Error: release has no 9 version", RevisionNotFound),
    ("Error: timed out waiting for the condition", ReleaseStoreError),
])
async def test_rollback_failures(helm, releases, lineage, stderr, error):
    helm.respond(returncode=1, stderr=stderr)

    with pytest.raises(error):
        await releases.rollback(lineage, 9)


@pytest.mark.asyncio
async def test_helm_timeout_is_release_store_error(helm, releases, lineage):
    helm.raise_error = subprocess.TimeoutExpired(["helm"], 30)

    with pytest.raises(ReleaseStoreError):
        await releases.history(lineage)


@pytest.mark.asyncio
async def test_missing_helm_binary(helm, releases, lineage):
    helm.raise_error = FileNotFoundError("helm")

    with pytest.raises(ReleaseStoreError):
        await releases.current_revision(lineage)
