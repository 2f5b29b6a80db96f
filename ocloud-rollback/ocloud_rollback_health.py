#!/usr/bin/env python3
"""
O-Cloud Rollback Health Aggregation
Turns per-instance probe results into a single verdict for a deployment.
The aggregator never talks to the network itself; the probe function is
supplied by the caller.
"""

import asyncio
from typing import Awaitable, Callable, Iterable, Optional, Sequence

from ocloud_rollback_errors import NoInstancesFound
from ocloud_rollback_models import (
    HealthOutcome,
    HealthReport,
    HealthSample,
    Verdict,
    utcnow,
)

CheckInstance = Callable[[str], Awaitable[HealthSample]]


class HealthAggregator:
    """Conservative aggregation: one failing instance makes the deployment unhealthy"""

    @staticmethod
    def aggregate(samples: Iterable[HealthSample]) -> HealthReport:
        samples = tuple(samples)
        healthy = bool(samples) and all(s.outcome == HealthOutcome.HEALTHY for s in samples)
        return HealthReport(
            verdict=Verdict.HEALTHY if healthy else Verdict.UNHEALTHY,
            samples=samples,
        )

    async def _probe(self, instance_id: str, check_instance: CheckInstance,
                     timeout: float, stop: Optional[asyncio.Event]) -> HealthSample:
        probe = asyncio.ensure_future(check_instance(instance_id))
        waiters = {probe}
        stopper = None
        if stop is not None:
            stopper = asyncio.ensure_future(stop.wait())
            waiters.add(stopper)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            if stopper is not None and not stopper.done():
                stopper.cancel()

        if probe not in done:
            probe.cancel()
            detail = "probe cancelled" if stopper is not None and stopper in done else f"probe timed out after {timeout}s"
            return HealthSample(instance_id, utcnow(), HealthOutcome.UNREACHABLE, detail)

        try:
            return probe.result()
        except asyncio.CancelledError:
            return HealthSample(instance_id, utcnow(), HealthOutcome.UNREACHABLE, "probe cancelled")
        except Exception as e:
            return HealthSample(instance_id, utcnow(), HealthOutcome.UNREACHABLE, str(e))

    async def evaluate(self, instance_ids: Sequence[str], check_instance: CheckInstance,
                       timeout: float, stop: Optional[asyncio.Event] = None) -> HealthReport:
        """Probe every instance concurrently and aggregate the samples"""
        instance_ids = list(instance_ids)
        if not instance_ids:
            raise NoInstancesFound("No instances to evaluate")

        samples = await asyncio.gather(*(
            self._probe(instance_id, check_instance, timeout, stop)
            for instance_id in instance_ids
        ))
        return self.aggregate(samples)
