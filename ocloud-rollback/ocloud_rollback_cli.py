#!/usr/bin/env python3
"""
O-Cloud Rollback Tool
Health-driven Helm rollback, verification, deployment strategies and load
validation for an application running on Kubernetes.
"""

import argparse
import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv

from ocloud_rollback_audit import AuditLog
from ocloud_rollback_cluster import KubernetesClusterRuntime
from ocloud_rollback_config import Config
from ocloud_rollback_controller import RolloutController
from ocloud_rollback_errors import RollbackError
from ocloud_rollback_loadtest import LoadGenerator
from ocloud_rollback_models import LoopState, RollbackOutcome
from ocloud_rollback_release import HelmReleaseStore
from ocloud_rollback_strategies import DeploymentStrategies
from ocloud_rollback_utils import Colors, ComponentLogger, setup_logging

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def parse_time(value: str) -> datetime:
    """ISO-8601 timestamp; naive values are taken as UTC"""
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def create_argument_parser():
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        prog='ocloud-rollback',
        description='Helm rollback controller for the O-Cloud application',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  NAMESPACE (default: ocloud), APP_NAME (default: ocloud-app)
  DEPLOYMENT_NAME, APP_SELECTOR, SERVICE_NAME
  MAX_REVISIONS (default: 10), ROLLBACK_TIMEOUT (default: 600)
  CHECK_INTERVAL (default: 30), MAX_ATTEMPTS (default: 10), MONITOR_WINDOW
  PROBE_TIMEOUT (default: 10), HEALTH_PATH (default: /health), HEALTH_PORT (default: 8080)
  VERIFY_ATTEMPTS (default: 5), VERIFY_INTERVAL (default: 10), READY_TIMEOUT (default: 300)
  VERIFY_PATHS (default: /health,/ready,/status), VERIFY_SERVICE (default: true)
  RESOURCE_RETRY_COUNT, RESOURCE_RETRY_DELAY, RESOURCE_RETRY_MAX_DELAY
  AUDIT_DB_PATH (default: rollback_audit.duckdb), HELM_BIN (default: helm)
  CANARY_REPLICAS, CANARY_PERIOD, LOAD_TEST_REQUESTS, LOAD_TEST_CONCURRENCY, LOAD_TEST_PATH
  LOG_FILE, LOG_LEVEL, KUBECONFIG, K8S_VERIFY, K8S_CA_CERT

  Values may also come from a .env file or a YAML file given with --config.

Examples:
  %(prog)s history                          # Show deployment history
  %(prog)s rollback-to 3                    # Rollback to revision 3
  %(prog)s rollback-prev                    # Rollback to previous stable
  %(prog)s verify                           # Verify current deployment
  %(prog)s auto-rollback --interval 60 --attempts 5
  %(prog)s -n production emergency          # Emergency rollback in prod
  %(prog)s audit --since 2026-01-01T00:00:00
  %(prog)s canary registry/app:v2.0.0 --period 120
        """
    )

    parser.add_argument('-n', '--namespace', help='Namespace of the release')
    parser.add_argument('-a', '--app-name', help='Helm release name')
    parser.add_argument('-t', '--timeout', type=int, help='Rollback timeout in seconds')
    parser.add_argument('--deployment', help='Deployment name (default: release name)')
    parser.add_argument('--selector', help='Pod label selector')
    parser.add_argument('--config', help='YAML configuration file')
    parser.add_argument('--audit-db', help='Audit log database path')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Set logging level')
    parser.add_argument('--log-file', help='Log file path')
    parser.add_argument('--verify-ssl', action='store_true',
                        help='Force SSL certificate verification')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('history', help='Show deployment history')
    sub.add_parser('evaluate', help='Run one health evaluation')

    rollback_to = sub.add_parser('rollback-to', help='Rollback to a specific revision')
    rollback_to.add_argument('revision', type=int, help='Target revision')

    sub.add_parser('rollback-prev', help='Rollback to the previous stable revision')
    sub.add_parser('verify', help='Verify current deployment status')

    auto = sub.add_parser('auto-rollback', help='Automated rollback if unhealthy')
    auto.add_argument('--interval', type=float, help='Seconds between health checks')
    auto.add_argument('--attempts', type=int, help='Unhealthy checks before rolling back')
    auto.add_argument('--window', type=float, help='Stop after this many healthy seconds')

    sub.add_parser('emergency', help='Emergency rollback procedure')

    audit = sub.add_parser('audit', help='Show recorded rollback events')
    audit.add_argument('--since', type=parse_time, help='Start of time range (inclusive)')
    audit.add_argument('--until', type=parse_time, help='End of time range (exclusive)')
    audit.add_argument('--all-lineages', action='store_true',
                       help='Include events of every release')

    rolling = sub.add_parser('rolling', help='Rolling update guarded by automated rollback')
    rolling.add_argument('image', help='New image reference')
    rolling.add_argument('--window', type=float, help='Seconds to watch after the rollout')

    canary = sub.add_parser('canary', help='Canary deployment')
    canary.add_argument('image', help='New image reference')
    canary.add_argument('--replicas', type=int, help='Canary replicas')
    canary.add_argument('--period', type=float, help='Seconds to observe the canary')

    load = sub.add_parser('load-test', help='Basic load test against the service')
    load.add_argument('--requests', type=int, help='Total number of requests')
    load.add_argument('--concurrency', type=int, help='Concurrent requests')
    load.add_argument('--path', help='Request path')

    return parser


def build_config(args) -> Config:
    config = Config()
    if args.config:
        config.load_yaml(args.config)

    if args.namespace is not None:
        config.namespace = args.namespace
    if args.app_name is not None:
        config.app_name = args.app_name
    if args.timeout is not None:
        config.rollback_timeout = args.timeout
    if args.deployment is not None:
        config.deployment_name = args.deployment
    if args.selector is not None:
        config.app_selector = args.selector
    if args.audit_db is not None:
        config.audit_db_path = args.audit_db
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.log_file is not None:
        config.log_file = args.log_file
    if args.verify_ssl:
        config.k8s_verify_ssl = True
    return config


class RollbackTool(ComponentLogger):
    """Wires the controller to its collaborators and runs one command"""

    def __init__(self, config: Config, audit: AuditLog, cluster=None, releases=None):
        self.config = config
        self.audit = audit
        self._cluster = cluster
        self._releases = releases
        self._controller = None
        self.lineage = config.lineage()

    # Kubernetes and helm clients are only built for commands that use them

    @property
    def cluster(self):
        if self._cluster is None:
            self._cluster = KubernetesClusterRuntime(self.config)
        return self._cluster

    @property
    def releases(self):
        if self._releases is None:
            self._releases = HelmReleaseStore(self.config)
        return self._releases

    @property
    def controller(self) -> RolloutController:
        if self._controller is None:
            self._controller = RolloutController(self.cluster, self.releases, self.audit, self.config)
        return self._controller

    def _print_transition(self, transition):
        color = {
            LoopState.STABLE: Colors.GREEN,
            LoopState.FAILED: Colors.RED,
            LoopState.CANCELLED: Colors.YELLOW,
        }.get(transition.state, Colors.CYAN)
        previous = transition.previous.value if transition.previous else '-'
        print(f"{color}{previous} -> {transition.state.value}{Colors.NC} "
              f"reason={transition.reason} attempts={transition.attempts}")
        if transition.terminal:
            for event in transition.events:
                print(f"  event {event.outcome.value}: {event.from_revision} -> {event.to_revision} "
                      f"({event.triggered_by.value}) {event.reason}")
            if transition.error:
                print(f"  error: {transition.error}")

    def _exit_for(self, transition) -> int:
        if transition.state == LoopState.STABLE:
            return EXIT_OK
        if transition.state == LoopState.CANCELLED:
            return EXIT_INTERRUPTED
        return EXIT_FAILED

    async def cmd_history(self, args, stop) -> int:
        current, history = await self.controller.history(self.lineage)
        print(f"Deployment history for {self.lineage.key} (current: {current.id})")
        print(f"{'REVISION':<10}{'UPDATED':<28}{'STATUS':<12}DESCRIPTION")
        for revision in history:
            print(f"{revision.id:<10}{revision.created_at.isoformat(timespec='seconds'):<28}"
                  f"{revision.status.value:<12}{revision.description}")
        return EXIT_OK

    async def cmd_evaluate(self, args, stop) -> int:
        report = await self.controller.evaluate_once(self.lineage)
        for sample in report.samples:
            print(f"{sample.instance_id}: {sample.outcome.value} {sample.detail}")
        return EXIT_OK if report.healthy else EXIT_FAILED

    async def cmd_rollback_to(self, args, stop) -> int:
        event = await self.controller.rollback_to(self.lineage, args.revision, stop=stop)
        print(f"Rollback {event.outcome.value}: {event.from_revision} -> {event.to_revision} {event.reason}")
        if event.outcome == RollbackOutcome.SUCCEEDED:
            return EXIT_OK
        if event.outcome == RollbackOutcome.CANCELLED:
            return EXIT_INTERRUPTED
        return EXIT_FAILED

    async def cmd_rollback_prev(self, args, stop) -> int:
        final = await self.controller.rollback_previous(self.lineage, stop=stop)
        self._print_transition(final)
        return self._exit_for(final)

    async def cmd_verify(self, args, stop) -> int:
        final = await self.controller.verify(self.lineage, stop=stop)
        self._print_transition(final)
        return self._exit_for(final)

    async def cmd_auto_rollback(self, args, stop) -> int:
        final = None
        async for transition in self.controller.monitor(
                self.lineage, interval=args.interval, max_attempts=args.attempts,
                window=args.window, stop=stop):
            self._print_transition(transition)
            final = transition
        return self._exit_for(final)

    async def cmd_emergency(self, args, stop) -> int:
        self.log_warn("=== EMERGENCY ROLLBACK PROCEDURE INITIATED ===", "EMERGENCY")
        final = await self.controller.rollback_previous(self.lineage, stop=stop)
        self._print_transition(final)
        if final.state == LoopState.STABLE:
            self.log_success("EMERGENCY ROLLBACK COMPLETED SUCCESSFULLY", "EMERGENCY")
        else:
            self.log_error("EMERGENCY ROLLBACK VERIFICATION FAILED - MANUAL INTERVENTION REQUIRED", "EMERGENCY")
        return self._exit_for(final)

    async def cmd_audit(self, args, stop) -> int:
        lineage = None if args.all_lineages else self.lineage.key
        count = 0
        for event in self.audit.query(args.since, args.until, lineage):
            print(f"{event.timestamp.isoformat(timespec='seconds')} {event.lineage} "
                  f"{event.from_revision} -> {event.to_revision} {event.triggered_by.value} "
                  f"{event.outcome.value} {event.reason}")
            count += 1
        print(f"{count} event(s)")
        return EXIT_OK

    async def cmd_rolling(self, args, stop) -> int:
        strategies = DeploymentStrategies(self.controller, self.config)
        final = await strategies.rolling_update(self.lineage, args.image, window=args.window, stop=stop)
        self._print_transition(final)
        if final.state == LoopState.STABLE and final.events:
            # the rollout itself was rolled back
            return EXIT_FAILED
        return self._exit_for(final)

    async def cmd_canary(self, args, stop) -> int:
        strategies = DeploymentStrategies(self.controller, self.config)
        result = await strategies.canary(self.lineage, args.image, replicas=args.replicas,
                                         period=args.period, stop=stop)
        print(f"Canary {'promoted' if result.promoted else 'aborted'}: {result.reason}")
        return EXIT_OK if result.promoted else EXIT_FAILED

    async def cmd_load_test(self, args, stop) -> int:
        generator = LoadGenerator(self.cluster, self.config)
        report = await generator.run(self.lineage, requests=args.requests,
                                     concurrency=args.concurrency, path=args.path, stop=stop)
        print(f"Requests: {report.total} ok={report.succeeded} failed={report.failed} "
              f"duration={report.duration:.2f}s")
        print(f"Latency p50={report.percentile(50) * 1000:.1f}ms "
              f"p95={report.percentile(95) * 1000:.1f}ms restarts={report.restart_delta}")
        return EXIT_OK if report.failed == 0 and not report.cancelled else EXIT_FAILED

    async def run(self, args, stop: Optional[asyncio.Event] = None) -> int:
        handler = getattr(self, 'cmd_' + args.command.replace('-', '_'))
        return await handler(args, stop)


async def main(argv=None) -> int:
    """Main execution function"""
    load_dotenv()
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except (OSError, ValueError) as e:
        print(f"{Colors.RED}[CONFIG]{Colors.NC} {e}", file=sys.stderr)
        return EXIT_FAILED
    setup_logging(config.log_level, config.log_file)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        audit = AuditLog(config.audit_db_path)
    except RollbackError as e:
        ComponentLogger().log_error(f"{e} ({e.reason})", "AUDIT")
        return EXIT_FAILED

    try:
        tool = RollbackTool(config, audit)
        return await tool.run(args, stop)
    except RollbackError as e:
        ComponentLogger().log_error(f"{e} ({e.reason})", "MAIN")
        return EXIT_FAILED
    finally:
        audit.close()


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)


if __name__ == '__main__':
    run()
