#!/usr/bin/env python3
"""
O-Cloud Rollback Data Model
Revisions, health samples, rollback events and loop transitions
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

_ROLLBACK_DESCRIPTION = re.compile(r"^Rollback to (\d+)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevisionStatus(str, Enum):
    DEPLOYED = "deployed"
    SUPERSEDED = "superseded"
    FAILED = "failed"

    @classmethod
    def from_helm(cls, status: str) -> "RevisionStatus":
        """Map a helm release status onto the three revision states"""
        status = (status or "").strip().lower()
        if status == "deployed":
            return cls.DEPLOYED
        if status == "superseded":
            return cls.SUPERSEDED
        # failed, pending-*, uninstalling, uninstalled, unknown
        return cls.FAILED


class HealthOutcome(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNREACHABLE = "unreachable"


class Verdict(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class TriggeredBy(str, Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"


class RollbackOutcome(str, Enum):
    INITIATED = "initiated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    VERIFICATION_FAILED = "verification-failed"
    CANCELLED = "cancelled"


class LoopState(str, Enum):
    MONITORING = "MONITORING"
    ROLLING_BACK = "ROLLING_BACK"
    VERIFYING = "VERIFYING"
    STABLE = "STABLE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in (LoopState.STABLE, LoopState.FAILED, LoopState.CANCELLED)


@dataclass(frozen=True)
class Lineage:
    """Logical identity of the deployable app across all of its revisions"""
    release: str
    namespace: str = "default"
    deployment: Optional[str] = None
    selector: Optional[str] = None
    service: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.release}"

    @property
    def deployment_name(self) -> str:
        return self.deployment or self.release

    @property
    def label_selector(self) -> str:
        return self.selector or f"app.kubernetes.io/instance={self.release}"

    @property
    def service_name(self) -> str:
        return self.service or self.release


@dataclass(frozen=True)
class Revision:
    id: int
    status: RevisionStatus
    created_at: datetime
    description: str = ""

    @property
    def ever_deployed(self) -> bool:
        """True if this revision passed deployment at some point"""
        return self.status in (RevisionStatus.DEPLOYED, RevisionStatus.SUPERSEDED)

    @property
    def rollback_origin(self) -> Optional[int]:
        """Revision this one copies when helm described it as 'Rollback to N'"""
        match = _ROLLBACK_DESCRIPTION.match(self.description.strip())
        return int(match.group(1)) if match else None


@dataclass(frozen=True)
class InstanceStatus:
    phase: str
    ready: bool
    restart_count: int = 0


@dataclass(frozen=True)
class HealthSample:
    instance_id: str
    timestamp: datetime
    outcome: HealthOutcome
    detail: str = ""


@dataclass(frozen=True)
class HealthReport:
    verdict: Verdict
    samples: Tuple[HealthSample, ...] = ()

    @property
    def healthy(self) -> bool:
        return self.verdict == Verdict.HEALTHY

    def failing(self) -> Tuple[HealthSample, ...]:
        return tuple(s for s in self.samples if s.outcome != HealthOutcome.HEALTHY)


@dataclass(frozen=True)
class RollbackEvent:
    lineage: str
    from_revision: int
    to_revision: int
    triggered_by: TriggeredBy
    outcome: RollbackOutcome
    timestamp: datetime = field(default_factory=utcnow)
    reason: str = ""
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class Transition:
    """One state change of a rollback decision loop"""
    lineage: str
    previous: Optional[LoopState]
    state: LoopState
    reason: str
    attempts: int = 0
    timestamp: datetime = field(default_factory=utcnow)
    report: Optional[HealthReport] = None
    events: Tuple[RollbackEvent, ...] = ()
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state.terminal
