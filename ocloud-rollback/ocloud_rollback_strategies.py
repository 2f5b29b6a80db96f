#!/usr/bin/env python3
"""
O-Cloud Deployment Strategies
Rolling update guarded by the rollback controller, and a canary rollout that
observes a single canary deployment before promoting the new image.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from ocloud_rollback_config import Config
from ocloud_rollback_controller import RolloutController
from ocloud_rollback_errors import NoInstancesFound, TransientError
from ocloud_rollback_models import HealthReport, Lineage, Transition
from ocloud_rollback_utils import ComponentLogger, sleep_or_stop


@dataclass
class CanaryResult:
    promoted: bool
    reason: str
    image: str
    reports: List[HealthReport] = field(default_factory=list)


class DeploymentStrategies(ComponentLogger):
    """Image rollouts on top of the cluster runtime and rollout controller"""

    def __init__(self, controller: RolloutController, config: Config):
        self.controller = controller
        self.cluster = controller.cluster
        self.config = config

    async def rolling_update(self, lineage: Lineage, image: str,
                             window: Optional[float] = None,
                             stop: Optional[asyncio.Event] = None) -> Transition:
        """Set the new image, wait for the rollout and watch it for a window.

        Sustained failure inside the window rolls the release back through the
        controller; the returned transition is the terminal one.
        """
        window = window or self.config.monitor_window or self.config.canary_period
        self.log_info(f"Performing rolling update of {lineage.deployment_name} to {image}", "ROLLING")
        await self.cluster.set_image(lineage, image)

        if not await self.cluster.wait_until_ready(lineage, self.config.ready_timeout, stop):
            self.log_warn(f"Rollout of {image} did not become ready, watching health anyway", "ROLLING")

        final = None
        async for transition in self.controller.monitor(lineage, window=window, stop=stop):
            final = transition
        return final

    async def _observe(self, canary: Lineage, period: float, interval: float,
                       max_attempts: int, stop: Optional[asyncio.Event],
                       reports: List[HealthReport]) -> Optional[str]:
        """Watch the canary; returns a failure reason, or None if the period ended on a healthy verdict"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + period
        failures = 0

        while True:
            try:
                report = await self.controller.evaluate_once(canary)
                reports.append(report)
                failures = 0 if report.healthy else failures + 1
            except (NoInstancesFound, TransientError) as e:
                self.log_warn(f"Canary evaluation failed: {e}", "CANARY")
                failures += 1

            if failures >= max_attempts:
                return "canary-unhealthy"
            if loop.time() >= deadline:
                # promotion needs a healthy verdict at the end of the period
                return None if failures == 0 else "canary-unhealthy"
            if await sleep_or_stop(min(interval, max(deadline - loop.time(), 0)), stop):
                return "cancelled"

    async def canary(self, lineage: Lineage, image: str,
                     replicas: Optional[int] = None,
                     period: Optional[float] = None,
                     stop: Optional[asyncio.Event] = None) -> CanaryResult:
        """Run ``image`` as a canary next to the stable deployment, then promote or abort"""
        replicas = replicas or self.config.canary_replicas
        period = self.config.canary_period if period is None else period
        original_replicas = await self.cluster.get_replicas(lineage)
        reports: List[HealthReport] = []

        self.log_info(f"Performing canary deployment of {image} for {lineage.deployment_name}", "CANARY")
        canary = await self.cluster.create_canary(lineage, image, replicas)
        if original_replicas > replicas:
            await self.cluster.scale(lineage, original_replicas - replicas)

        try:
            if not await self.cluster.wait_until_ready(canary, self.config.ready_timeout, stop):
                reason = "cancelled" if stop is not None and stop.is_set() else "canary-not-ready"
            else:
                self.log_info(f"Monitoring canary for {period}s", "CANARY")
                reason = await self._observe(
                    canary, period, self.config.check_interval,
                    self.config.max_attempts, stop, reports
                )

            if reason is None:
                self.log_success("Canary successful, promoting to full deployment", "CANARY")
                await self.cluster.set_image(lineage, image)
                await self.cluster.scale(lineage, original_replicas)
                if not await self.cluster.wait_until_ready(lineage, self.config.ready_timeout, stop):
                    self.log_warn("Promoted deployment is not ready yet", "CANARY")
                return CanaryResult(True, "promoted", image, reports)

            self.log_error(f"Canary failed ({reason}), keeping the stable version", "CANARY")
            await self.cluster.scale(lineage, original_replicas)
            return CanaryResult(False, reason, image, reports)
        finally:
            await self.cluster.delete_deployment(canary)
