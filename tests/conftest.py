import asyncio
from collections import deque
from datetime import datetime, timedelta, timezone

import pytest

from ocloud_rollback_audit import AuditLog
from ocloud_rollback_config import Config
from ocloud_rollback_controller import RolloutController
from ocloud_rollback_errors import ReleaseStoreError, RollbackRejected
from ocloud_rollback_models import (
    HealthOutcome,
    HealthSample,
    Lineage,
    Revision,
    RevisionStatus,
    utcnow,
)
from ocloud_rollback_utils import ComponentLogger, sleep_or_stop

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def rev(revision_id, status, description=""):
    return Revision(
        id=revision_id,
        status=RevisionStatus(status),
        created_at=BASE_TIME + timedelta(hours=revision_id),
        description=description,
    )


class FakeReleaseStore:
    """In-memory helm history"""

    def __init__(self, revisions, current_id=None):
        self.revisions = {r.id: r for r in revisions}
        self.current_id = current_id or max(self.revisions)
        self.rollback_calls = []
        self.reject_times = 0
        self.rollback_delay = 0.0
        self.unavailable = False

    @property
    def rolled_back(self):
        return self.revisions[self.current_id].description.startswith("Rollback to")

    async def current_revision(self, lineage):
        if self.unavailable:
            raise ReleaseStoreError("release store down")
        return self.revisions[self.current_id]

    async def history(self, lineage, max_entries=None):
        ordered = sorted(self.revisions.values(), key=lambda r: r.id, reverse=True)
        return ordered[:max_entries] if max_entries else ordered

    async def rollback(self, lineage, target_revision_id, timeout=None):
        self.rollback_calls.append(target_revision_id)
        if self.rollback_delay:
            await asyncio.sleep(self.rollback_delay)
        if self.reject_times:
            self.reject_times -= 1
            raise RollbackRejected("another operation (install/upgrade/rollback) is in progress")

        previous = self.revisions[self.current_id]
        self.revisions[previous.id] = Revision(
            previous.id, RevisionStatus.SUPERSEDED, previous.created_at, previous.description
        )
        new_id = max(self.revisions) + 1
        self.revisions[new_id] = rev(new_id, "deployed", f"Rollback to {target_revision_id}")
        self.current_id = new_id


class FakeCluster:
    """ClusterRuntime whose health is scripted per evaluation or computed by a function"""

    def __init__(self, instances=("pod-a", "pod-b"), health=None):
        self.instances = list(instances)
        self.scripted = deque()
        self.current = HealthOutcome.HEALTHY
        self.health = health
        self.ready = True
        self.ready_delay = 0.0
        self.failing_paths = set()
        self.checked_paths = set()
        self.endpoints = ["10.128.0.10", "10.128.0.11"]
        self.list_calls = 0
        self.list_error = None
        self.calls = []
        self.replicas = 3
        self.image = ("app", "registry/app:v1")
        self.restarts = [{"pod-a": 0}, {"pod-a": 0}]
        self.service_results = deque()

    def script(self, *outcomes):
        self.scripted.extend(outcomes)

    async def list_instances(self, lineage):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        if self.scripted:
            self.current = self.scripted.popleft()
        return list(self.instances)

    async def check_instance(self, lineage, instance_id, paths=None):
        paths = paths or ["/health"]
        self.checked_paths.update(paths)
        failing = [p for p in paths if p in self.failing_paths]
        if failing:
            return HealthSample(instance_id, utcnow(), HealthOutcome.UNHEALTHY, f"{failing[0]} check failed")
        outcome = self.health() if self.health is not None else self.current
        return HealthSample(instance_id, utcnow(), outcome)

    async def service_endpoints(self, lineage):
        return list(self.endpoints)

    async def wait_until_ready(self, lineage, timeout, stop=None):
        self.calls.append(("wait_until_ready", lineage.deployment_name))
        if self.ready_delay and await sleep_or_stop(self.ready_delay, stop):
            return False
        return self.ready

    async def get_replicas(self, lineage):
        return self.replicas

    async def get_image(self, lineage):
        return self.image

    async def scale(self, lineage, replicas):
        self.calls.append(("scale", lineage.deployment_name, replicas))

    async def set_image(self, lineage, image, container=None):
        self.calls.append(("set_image", lineage.deployment_name, image))

    async def create_canary(self, lineage, image, replicas):
        self.calls.append(("create_canary", lineage.deployment_name, image, replicas))
        return Lineage(lineage.release, lineage.namespace,
                       deployment=f"{lineage.deployment_name}-canary",
                       selector="rollout-track=canary")

    async def delete_deployment(self, lineage):
        self.calls.append(("delete_deployment", lineage.deployment_name))

    async def restart_counts(self, lineage):
        return self.restarts.pop(0) if len(self.restarts) > 1 else self.restarts[0]

    async def request_service(self, lineage, path, timeout):
        ok = self.service_results.popleft() if self.service_results else True
        return ok, 0.01


@pytest.fixture(autouse=True)
def quiet_console(monkeypatch):
    monkeypatch.setattr(ComponentLogger, "console", False)


@pytest.fixture
def config():
    cfg = Config()
    cfg.check_interval = 0
    cfg.max_attempts = 3
    cfg.monitor_window = None
    cfg.probe_timeout = 1
    cfg.verify_attempts = 2
    cfg.verify_interval = 0
    cfg.verify_paths = ["/health", "/ready", "/status"]
    cfg.verify_service = True
    cfg.ready_timeout = 1
    cfg.rollback_timeout = 5
    cfg.resource_retry_count = 2
    cfg.resource_retry_delay = 0
    cfg.resource_retry_max_delay = 0
    cfg.canary_period = 0
    cfg.log_file = None
    return cfg


@pytest.fixture
def lineage():
    return Lineage(release="ocloud-app", namespace="ocloud")


@pytest.fixture
def audit():
    log = AuditLog(":memory:")
    yield log
    log.close()


@pytest.fixture
def store():
    return FakeReleaseStore([
        rev(2, "superseded"),
        rev(3, "failed"),
        rev(4, "superseded"),
        rev(5, "deployed"),
    ])


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def controller(cluster, store, audit, config):
    return RolloutController(cluster, store, audit, config)
