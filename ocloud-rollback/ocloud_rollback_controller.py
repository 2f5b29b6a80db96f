#!/usr/bin/env python3
"""
O-Cloud Rollout Controller

Polls application health, decides when an automated rollback is warranted,
rolls the release back to the last known-good revision and verifies the
outcome. Every invocation of ``monitor`` produces a stream of transitions
that ends in exactly one terminal state:

    MONITORING -> MONITORING      healthy, or unhealthy below max_attempts
    MONITORING -> ROLLING_BACK    max_attempts consecutive unhealthy verdicts
    MONITORING -> STABLE          monitoring window elapsed
    ROLLING_BACK -> VERIFYING     rollback accepted
    ROLLING_BACK -> FAILED        no stable revision / rejected after retries
    VERIFYING -> STABLE           healthy again
    VERIFYING -> FAILED           still unhealthy after verify_attempts checks
    any sleeping state -> CANCELLED

An ``initiated`` RollbackEvent is written when a rollback starts and one more
event when the rollback cycle ends.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Collection, Dict, List, Optional, Sequence, Set, Tuple

from ocloud_rollback_audit import AuditLog
from ocloud_rollback_config import Config
from ocloud_rollback_errors import (
    NoInstancesFound,
    NoStableRevision,
    RevisionNotFound,
    RollbackRejected,
    TransientError,
    VerificationTimeout,
)
from ocloud_rollback_health import HealthAggregator
from ocloud_rollback_models import (
    HealthReport,
    Lineage,
    LoopState,
    Revision,
    RollbackEvent,
    RollbackOutcome,
    Transition,
    TriggeredBy,
)
from ocloud_rollback_utils import ComponentLogger, retry_with_backoff, sleep_or_stop


def select_rollback_target(history: Sequence[Revision], current: Optional[Revision] = None,
                           exclude: Collection[int] = ()) -> Revision:
    """Newest revision, other than the latest and the current one, that was ever deployed.

    Revisions in ``exclude`` (rolled back away from, or failed verification
    after a rollback) are never chosen.
    """
    ordered = sorted(history, key=lambda r: r.id, reverse=True)
    current_id = current.id if current is not None else None
    for revision in ordered[1:]:
        if revision.id == current_id or revision.id in exclude:
            continue
        if revision.ever_deployed:
            return revision
    raise NoStableRevision("No previous stable revision found for rollback")


def is_at_revision(current: Revision, revision_id: int) -> bool:
    """helm rollback creates a copy revision described as 'Rollback to N'"""
    return current.id == revision_id or current.rollback_origin == revision_id


class LineageLocks:
    """At most one rollback in flight per lineage.

    ``generation`` counts rollbacks applied under the lock, so a waiter can
    tell that the lineage was rolled back while it was queued.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._generations: Dict[str, int] = {}

    def get(self, lineage: Lineage) -> asyncio.Lock:
        return self._locks.setdefault(lineage.key, asyncio.Lock())

    def locked(self, lineage: Lineage) -> bool:
        return self.get(lineage).locked()

    def generation(self, lineage: Lineage) -> int:
        return self._generations.get(lineage.key, 0)

    def mark_applied(self, lineage: Lineage) -> None:
        self._generations[lineage.key] = self.generation(lineage) + 1

    @asynccontextmanager
    async def hold(self, lineage: Lineage, timeout: float):
        lock = self.get(lineage)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            raise RollbackRejected(f"Another rollback of {lineage.key} is still in progress")
        try:
            yield
        finally:
            lock.release()


@dataclass
class _LoopRun:
    """Mutable state owned by one decision loop invocation"""
    lineage: Lineage
    triggered_by: TriggeredBy
    state: Optional[LoopState] = None
    attempts: int = 0
    events: List[RollbackEvent] = field(default_factory=list)
    # lock generation seen when the current unhealthy streak began
    generation: Optional[int] = None

    def move(self, state: LoopState, reason: str, report: Optional[HealthReport] = None,
             error: Optional[BaseException] = None) -> Transition:
        transition = Transition(
            lineage=self.lineage.key,
            previous=self.state,
            state=state,
            reason=reason,
            attempts=self.attempts,
            report=report,
            events=tuple(self.events),
            error=str(error) if error is not None else None,
        )
        self.state = state
        return transition


class RolloutController(ComponentLogger):
    """Health-driven rollback controller for one or more lineages"""

    def __init__(self, cluster, releases, audit: AuditLog, config: Config,
                 locks: Optional[LineageLocks] = None,
                 aggregator: Optional[HealthAggregator] = None):
        self.cluster = cluster
        self.releases = releases
        self.audit = audit
        self.config = config
        self.locks = locks or LineageLocks()
        self.aggregator = aggregator or HealthAggregator()

    async def _call(self, operation, *args, **kwargs):
        """External call with bounded exponential backoff on transient errors"""
        def on_retry(attempt, wait_time, error):
            self.log_warn(f"{error} (retry {attempt}/{self.config.resource_retry_count} in {wait_time:.1f}s)", "RETRY")

        return await retry_with_backoff(
            operation, *args,
            retries=self.config.resource_retry_count,
            base_delay=self.config.resource_retry_delay,
            max_delay=self.config.resource_retry_max_delay,
            on_retry=on_retry,
            **kwargs
        )

    def _record(self, run: _LoopRun, from_revision: int, to_revision: int,
                outcome: RollbackOutcome, reason: str = "") -> RollbackEvent:
        event = RollbackEvent(
            lineage=run.lineage.key,
            from_revision=from_revision,
            to_revision=to_revision,
            triggered_by=run.triggered_by,
            outcome=outcome,
            reason=reason,
        )
        self.audit.append(event)
        run.events.append(event)
        return event

    # Health evaluation

    async def _evaluate(self, lineage: Lineage, stop: Optional[asyncio.Event] = None,
                        paths: Optional[List[str]] = None) -> HealthReport:
        instances = await self._call(self.cluster.list_instances, lineage)
        if not instances:
            raise NoInstancesFound(f"No instances match {lineage.label_selector} in {lineage.namespace}")

        async def check_instance(instance_id: str):
            if paths:
                return await self.cluster.check_instance(lineage, instance_id, paths)
            return await self.cluster.check_instance(lineage, instance_id)

        report = await self.aggregator.evaluate(
            instances, check_instance, self.config.probe_timeout, stop=stop
        )
        for sample in report.failing():
            self.log_warn(f"Instance {sample.instance_id} is {sample.outcome.value}: {sample.detail}", "HEALTH")
        return report

    async def evaluate_once(self, lineage: Lineage) -> HealthReport:
        """Single health evaluation pass; no loop state is kept"""
        report = await self._evaluate(lineage)
        if report.healthy:
            self.log_success(f"{lineage.key} is healthy ({len(report.samples)} instances)", "HEALTH")
        else:
            self.log_warn(f"{lineage.key} is unhealthy ({len(report.failing())}/{len(report.samples)} failing)", "HEALTH")
        return report

    # Decision loop

    async def monitor(self, lineage: Lineage,
                      interval: Optional[float] = None,
                      max_attempts: Optional[int] = None,
                      window: Optional[float] = None,
                      stop: Optional[asyncio.Event] = None) -> AsyncIterator[Transition]:
        """Watch a lineage and roll it back after sustained failure"""
        interval = self.config.check_interval if interval is None else interval
        max_attempts = self.config.max_attempts if max_attempts is None else max_attempts
        window = self.config.monitor_window if window is None else window
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + window if window else None
        run = _LoopRun(lineage, TriggeredBy.AUTOMATED)

        self.log_info(
            f"Monitoring {lineage.key} every {interval}s, rollback after {max_attempts} unhealthy checks",
            "MONITOR"
        )

        while True:
            if stop is not None and stop.is_set():
                yield run.move(LoopState.CANCELLED, "cancelled")
                return

            try:
                report = await self._evaluate(lineage, stop)
            except NoInstancesFound as e:
                self.log_warn(str(e), "MONITOR")
                yield run.move(LoopState.MONITORING, e.reason, error=e)
                report = None
            except TransientError as e:
                self.log_error(f"Health evaluation failed: {e}", "MONITOR")
                yield run.move(LoopState.FAILED, e.reason, error=e)
                return

            if stop is not None and stop.is_set():
                yield run.move(LoopState.CANCELLED, "cancelled")
                return

            if report is not None:
                if report.healthy:
                    run.attempts = 0
                    run.generation = None
                    yield run.move(LoopState.MONITORING, "healthy", report)
                else:
                    if run.attempts == 0:
                        run.generation = self.locks.generation(lineage)
                    run.attempts += 1
                    self.log_warn(f"Health check failed on attempt {run.attempts}/{max_attempts}", "MONITOR")
                    if run.attempts >= max_attempts:
                        self.log_error(
                            f"{lineage.key} remains unhealthy after {max_attempts} attempts, initiating automated rollback",
                            "MONITOR"
                        )
                        yield run.move(LoopState.ROLLING_BACK, "unhealthy-threshold", report)
                        break
                    yield run.move(LoopState.MONITORING, "unhealthy", report)

            # an expired window only ends the loop on a healthy verdict; an
            # unhealthy streak keeps counting towards max_attempts
            if deadline is not None and loop.time() >= deadline and report is not None and report.healthy:
                self.log_success(f"Monitoring window for {lineage.key} elapsed while healthy", "MONITOR")
                yield run.move(LoopState.STABLE, "monitoring-window-elapsed")
                return

            if await sleep_or_stop(interval, stop):
                yield run.move(LoopState.CANCELLED, "cancelled")
                return

        async for transition in self._roll_back(run, None, stop):
            yield transition

    async def _roll_back(self, run: _LoopRun, target_id: Optional[int],
                         stop: Optional[asyncio.Event]) -> AsyncIterator[Transition]:
        """ROLLING_BACK -> VERIFYING -> terminal"""
        lineage = run.lineage
        if run.state != LoopState.ROLLING_BACK:
            yield run.move(LoopState.ROLLING_BACK, "manual-rollback")

        try:
            current, target, reason = await self._apply_rollback(run, target_id)
        except (NoStableRevision, RevisionNotFound, TransientError) as e:
            self.log_error(str(e), "ROLLBACK")
            yield run.move(LoopState.FAILED, e.reason, error=e)
            return

        yield run.move(LoopState.VERIFYING, reason)

        try:
            report = await self._verify(lineage, stop)
        except VerificationTimeout as e:
            self.log_error(f"Rollback verification failed - manual intervention required: {e}", "VERIFY")
            if target is not None:
                self._record(run, current.id, target.id, RollbackOutcome.VERIFICATION_FAILED, e.reason)
            yield run.move(LoopState.FAILED, e.reason, error=e)
            return

        if report is None:
            if target is not None:
                self._record(run, current.id, target.id, RollbackOutcome.CANCELLED, "cancelled")
            yield run.move(LoopState.CANCELLED, "cancelled")
            return

        if target is None:
            yield run.move(LoopState.STABLE, "verified", report)
            return

        self._record(run, current.id, target.id, RollbackOutcome.SUCCEEDED)
        self.log_success(f"Rollback of {lineage.key} to revision {target.id} verified", "VERIFY")
        yield run.move(LoopState.STABLE, "rollback-verified", report)

    def _rejected_revisions(self, lineage: Lineage, history: Sequence[Revision],
                            current: Revision) -> Set[int]:
        """Revisions that must not be rollback targets.

        A revision is rejected once a rollback moved away from it or a rollback
        to it failed verification. Rejection carries over between a 'Rollback
        to N' copy and N, and the revision the current one copies is rejected
        too since the current revision is being rolled back.
        """
        rejected: Set[int] = set()
        for event in self.audit.query(lineage=lineage.key):
            if event.outcome == RollbackOutcome.INITIATED:
                rejected.add(event.from_revision)
            elif event.outcome == RollbackOutcome.VERIFICATION_FAILED:
                rejected.add(event.to_revision)

        for revision in list(history) + [current]:
            origin = revision.rollback_origin
            if origin is None:
                continue
            if revision.id in rejected or revision.id == current.id:
                rejected.add(origin)
            elif origin in rejected:
                rejected.add(revision.id)
        return rejected

    async def _apply_rollback(self, run: _LoopRun, target_id: Optional[int]):
        """Select the target and issue the rollback while holding the lineage lock.

        Returns (current, target, reason). A rollback to the previous stable
        revision returns (None, None, "rollback-applied-concurrently") without
        calling the store when another rollback of the same lineage was applied
        after its unhealthy streak began, or while it queued for the lock.
        """
        lineage = run.lineage
        seen = run.generation if run.generation is not None else self.locks.generation(lineage)

        async with self.locks.hold(lineage, self.config.rollback_timeout):
            if target_id is None and self.locks.generation(lineage) != seen:
                self.log_warn(f"{lineage.key} was rolled back while waiting, skipping duplicate rollback", "ROLLBACK")
                return None, None, "rollback-applied-concurrently"

            current = await self._call(self.releases.current_revision, lineage)
            history = await self._call(self.releases.history, lineage, self.config.max_revisions)
            if target_id is None:
                target = select_rollback_target(history, current, self._rejected_revisions(lineage, history, current))
            else:
                target = next((r for r in history if r.id == target_id), None)
                if target is None:
                    raise RevisionNotFound(f"Revision {target_id} does not exist for {lineage.release}")

            self.log_info(f"Rolling back {lineage.key} from revision {current.id} to revision {target.id}", "ROLLBACK")
            self._record(run, current.id, target.id, RollbackOutcome.INITIATED)

            try:
                await self._call(self.releases.rollback, lineage, target.id, self.config.rollback_timeout)
            except (RevisionNotFound, TransientError) as e:
                self._record(run, current.id, target.id, RollbackOutcome.FAILED, e.reason)
                raise

            self.locks.mark_applied(lineage)
            return current, target, "rollback-accepted"

    async def _verify(self, lineage: Lineage, stop: Optional[asyncio.Event] = None) -> Optional[HealthReport]:
        """Wait for readiness, then re-check every verify path and the service.

        None means the stop event fired.
        """
        ready = await self.cluster.wait_until_ready(lineage, self.config.ready_timeout, stop)
        if stop is not None and stop.is_set():
            return None
        if not ready:
            raise VerificationTimeout(
                f"Deployment {lineage.deployment_name} not ready after {self.config.ready_timeout}s"
            )

        last_error = None
        for attempt in range(1, self.config.verify_attempts + 1):
            if stop is not None and stop.is_set():
                return None
            try:
                report = await self._evaluate(lineage, stop, self.config.verify_paths)
                if not report.healthy:
                    last_error = f"{len(report.failing())} instance(s) failing"
                elif self.config.verify_service and not await self._call(self.cluster.service_endpoints, lineage):
                    last_error = f"Service {lineage.service_name} has no active endpoints"
                else:
                    return report
            except (NoInstancesFound, TransientError) as e:
                last_error = str(e)
            self.log_warn(f"Verification check {attempt}/{self.config.verify_attempts} failed: {last_error}", "VERIFY")
            if attempt < self.config.verify_attempts and await sleep_or_stop(self.config.verify_interval, stop):
                return None

        raise VerificationTimeout(
            f"{lineage.key} still unhealthy after {self.config.verify_attempts} checks: {last_error}"
        )

    # Operator entry points

    async def rollback_to(self, lineage: Lineage, revision_id: int,
                          stop: Optional[asyncio.Event] = None) -> RollbackEvent:
        """Manual rollback to a specific revision.

        Returns the last recorded event: `succeeded`, `failed`,
        `verification-failed`, or `cancelled` when the stop event fired while
        the rollback was being verified.
        """
        run = _LoopRun(lineage, TriggeredBy.MANUAL)
        current = await self._call(self.releases.current_revision, lineage)
        if is_at_revision(current, revision_id):
            self.log_info(f"{lineage.key} is already at revision {revision_id}, nothing to do", "ROLLBACK")
            return self._record(run, current.id, revision_id, RollbackOutcome.SUCCEEDED, "already-at-revision")

        history = await self._call(self.releases.history, lineage, self.config.max_revisions)
        if not any(r.id == revision_id for r in history):
            raise RevisionNotFound(f"Revision {revision_id} does not exist for {lineage.release}")

        final = await self._drain(self._roll_back(run, revision_id, stop))
        if not run.events:
            # failed before anything was initiated, e.g. the store stayed unavailable
            raise TransientError(final.error or final.reason, reason=final.reason)
        return run.events[-1]

    async def rollback_previous(self, lineage: Lineage,
                                triggered_by: TriggeredBy = TriggeredBy.MANUAL,
                                stop: Optional[asyncio.Event] = None) -> Transition:
        """Roll back to the previous stable revision and verify"""
        run = _LoopRun(lineage, triggered_by)
        return await self._drain(self._roll_back(run, None, stop))

    async def verify(self, lineage: Lineage, stop: Optional[asyncio.Event] = None) -> Transition:
        """Readiness and health verification of the current revision"""
        run = _LoopRun(lineage, TriggeredBy.MANUAL, state=LoopState.VERIFYING)
        try:
            report = await self._verify(lineage, stop)
        except VerificationTimeout as e:
            return run.move(LoopState.FAILED, e.reason, error=e)
        if report is None:
            return run.move(LoopState.CANCELLED, "cancelled")
        return run.move(LoopState.STABLE, "verified", report)

    async def _drain(self, transitions: AsyncIterator[Transition]) -> Transition:
        final = None
        async for transition in transitions:
            self.log_info(
                f"{transition.previous.value if transition.previous else '-'} -> "
                f"{transition.state.value} ({transition.reason})", "STATE"
            )
            final = transition
        return final

    async def history(self, lineage: Lineage) -> Tuple[Revision, List[Revision]]:
        current = await self._call(self.releases.current_revision, lineage)
        history = await self._call(self.releases.history, lineage, self.config.max_revisions)
        return current, history
