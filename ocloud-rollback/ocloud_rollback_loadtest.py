#!/usr/bin/env python3
"""
O-Cloud Load Validation
Fires a fixed number of requests at the application service with bounded
concurrency and compares pod restart counts before and after.
"""

import asyncio
import statistics
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ocloud_rollback_config import Config
from ocloud_rollback_models import Lineage
from ocloud_rollback_utils import ComponentLogger


@dataclass
class LoadTestReport:
    total: int
    succeeded: int
    failed: int
    duration: float
    latencies: List[float] = field(default_factory=list)
    restarts_before: Dict[str, int] = field(default_factory=dict)
    restarts_after: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def success_rate(self) -> float:
        return self.succeeded / self.total if self.total else 0.0

    def percentile(self, pct: float) -> float:
        if not self.latencies:
            return 0.0
        if len(self.latencies) == 1:
            return self.latencies[0]
        cuts = statistics.quantiles(self.latencies, n=100, method='inclusive')
        return cuts[min(max(int(pct) - 1, 0), 98)]

    @property
    def restart_delta(self) -> int:
        return sum(
            max(count - self.restarts_before.get(pod, 0), 0)
            for pod, count in self.restarts_after.items()
        )


class LoadGenerator(ComponentLogger):
    """Concurrent GET load against a lineage service"""

    def __init__(self, cluster, config: Config):
        self.cluster = cluster
        self.config = config

    async def run(self, lineage: Lineage,
                  requests: Optional[int] = None,
                  concurrency: Optional[int] = None,
                  path: Optional[str] = None,
                  timeout: Optional[float] = None,
                  stop: Optional[asyncio.Event] = None) -> LoadTestReport:
        requests = requests or self.config.load_test_requests
        concurrency = concurrency or self.config.load_test_concurrency
        path = path or self.config.load_test_path
        timeout = timeout or self.config.probe_timeout

        self.log_info(
            f"Running load test with {concurrency} concurrent connections, "
            f"{requests} requests against {lineage.service_name}{path}", "LOAD"
        )
        restarts_before = await self.cluster.restart_counts(lineage)

        semaphore = asyncio.Semaphore(concurrency)
        latencies: List[float] = []
        outcome = {'ok': 0, 'failed': 0}

        async def request_with_semaphore():
            async with semaphore:
                if stop is not None and stop.is_set():
                    return
                ok, elapsed = await self.cluster.request_service(lineage, path, timeout)
                latencies.append(elapsed)
                outcome['ok' if ok else 'failed'] += 1

        start = time.perf_counter()
        tasks = [asyncio.ensure_future(request_with_semaphore()) for _ in range(requests)]
        cancelled = False
        if stop is not None:
            waiter = asyncio.ensure_future(stop.wait())
            done, _ = await asyncio.wait(
                [asyncio.gather(*tasks), waiter], return_when=asyncio.FIRST_COMPLETED
            )
            if waiter in done:
                cancelled = True
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
            else:
                waiter.cancel()
        else:
            await asyncio.gather(*tasks)
        duration = time.perf_counter() - start

        restarts_after = await self.cluster.restart_counts(lineage)
        report = LoadTestReport(
            total=outcome['ok'] + outcome['failed'],
            succeeded=outcome['ok'],
            failed=outcome['failed'],
            duration=duration,
            latencies=sorted(latencies),
            restarts_before=restarts_before,
            restarts_after=restarts_after,
            cancelled=cancelled,
        )

        self.log_info(
            f"Load test completed: {report.succeeded}/{report.total} ok, "
            f"p50={report.percentile(50) * 1000:.1f}ms p95={report.percentile(95) * 1000:.1f}ms", "LOAD"
        )
        if report.restart_delta > 0:
            self.log_warn(f"Found {report.restart_delta} total pod restarts during testing", "LOAD")
        else:
            self.log_success("No pod restarts detected during testing", "LOAD")
        return report
