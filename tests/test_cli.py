import asyncio
from datetime import datetime, timezone

import pytest

import ocloud_rollback_cli
from conftest import FakeCluster, FakeReleaseStore, rev
from ocloud_rollback_cli import (
    EXIT_FAILED,
    EXIT_INTERRUPTED,
    EXIT_OK,
    RollbackTool,
    build_config,
    create_argument_parser,
)
from ocloud_rollback_models import HealthOutcome, Lineage, RollbackOutcome


@pytest.fixture
def parser():
    return create_argument_parser()


@pytest.fixture
def tool(config, audit, cluster, store):
    config.namespace = "ocloud"
    config.app_name = "ocloud-app"
    return RollbackTool(config, audit, cluster=cluster, releases=store)


def test_global_options_override_config(parser, monkeypatch):
    monkeypatch.delenv("K8S_VERIFY", raising=False)
    args = parser.parse_args(["-n", "prod", "-a", "web", "-t", "120", "--selector", "app=web",
                              "--verify-ssl", "rollback-to", "3"])

    config = build_config(args)

    assert args.command == "rollback-to"
    assert args.revision == 3
    assert config.namespace == "prod"
    assert config.app_name == "web"
    assert config.rollback_timeout == 120
    assert config.app_selector == "app=web"
    assert config.k8s_verify_ssl is True


def test_config_file_is_applied_before_flags(parser, tmp_path):
    path = tmp_path / "rollback.yaml"
    path.write_text("namespace: staging\nmax_attempts: 2\n")
    args = parser.parse_args(["--config", str(path), "-n", "prod", "verify"])

    config = build_config(args)

    assert config.namespace == "prod"
    assert config.max_attempts == 2


def test_audit_time_range_parsing(parser):
    args = parser.parse_args(["audit", "--since", "2026-01-01T00:00:00", "--until", "2026-01-02T00:00:00Z"])

    assert args.since == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert args.until == datetime(2026, 1, 2, tzinfo=timezone.utc)


def test_invalid_timestamp_is_rejected(parser):
    with pytest.raises(SystemExit):
        parser.parse_args(["audit", "--since", "last tuesday"])


def test_command_is_required(parser):
    with pytest.raises(SystemExit):
        parser.parse_args([])


@pytest.mark.asyncio
async def test_history_command(tool, parser, capsys):
    code = await tool.run(parser.parse_args(["history"]))

    out = capsys.readouterr().out
    assert code == EXIT_OK
    assert "current: 5" in out
    assert "superseded" in out


@pytest.mark.asyncio
async def test_rollback_to_command_records_events(tool, parser, store, audit):
    code = await tool.run(parser.parse_args(["rollback-to", "2"]))

    assert code == EXIT_OK
    assert store.rollback_calls == [2]
    assert [e.outcome for e in audit.query()] == [RollbackOutcome.INITIATED, RollbackOutcome.SUCCEEDED]


@pytest.mark.asyncio
async def test_emergency_fails_when_verification_fails(tool, parser, cluster):
    cluster.health = lambda: HealthOutcome.UNHEALTHY

    assert await tool.run(parser.parse_args(["emergency"])) == EXIT_FAILED


@pytest.mark.asyncio
async def test_auto_rollback_command(tool, parser, cluster, store, capsys):
    cluster.health = lambda: HealthOutcome.HEALTHY if store.rolled_back else HealthOutcome.UNHEALTHY

    code = await tool.run(parser.parse_args(["auto-rollback", "--interval", "0", "--attempts", "2"]))

    assert code == EXIT_OK
    assert store.rollback_calls == [4]
    assert "ROLLING_BACK" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_audit_command_filters_by_lineage(config, audit, parser, capsys):
    config.namespace = "ocloud"
    config.app_name = "ocloud-app"
    other = RollbackTool(config, audit, cluster=FakeCluster(),
                         releases=FakeReleaseStore([rev(1, "superseded"), rev(2, "deployed")]))
    await other.controller.rollback_to(Lineage("other-app", "ocloud"), 1)
    tool = RollbackTool(config, audit, cluster=FakeCluster(), releases=FakeReleaseStore([rev(1, "deployed")]))

    await tool.run(parser.parse_args(["audit"]))
    assert "0 event(s)" in capsys.readouterr().out

    await tool.run(parser.parse_args(["audit", "--all-lineages"]))
    assert "2 event(s)" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_evaluate_command_exit_code(tool, parser, cluster):
    assert await tool.run(parser.parse_args(["evaluate"])) == EXIT_OK

    cluster.script(HealthOutcome.UNREACHABLE)
    assert await tool.run(parser.parse_args(["evaluate"])) == EXIT_FAILED


@pytest.mark.asyncio
async def test_main_reports_bad_config_file(tmp_path):
    code = await ocloud_rollback_cli.main(["--config", str(tmp_path / "missing.yaml"), "verify"])

    assert code == EXIT_FAILED


@pytest.mark.asyncio
async def test_audit_command_does_not_build_cluster_clients(config, audit, parser, monkeypatch, capsys):
    def unreachable(*args, **kwargs):
        raise AssertionError("cluster client built for audit")

    monkeypatch.setattr(ocloud_rollback_cli, "KubernetesClusterRuntime", unreachable)
    monkeypatch.setattr(ocloud_rollback_cli, "HelmReleaseStore", unreachable)
    tool = RollbackTool(config, audit)

    assert await tool.run(parser.parse_args(["audit"])) == EXIT_OK
    assert "0 event(s)" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_rollback_to_command_interrupted_while_verifying(tool, parser, cluster, audit):
    cluster.ready_delay = 3
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, stop.set)

    code = await asyncio.wait_for(tool.run(parser.parse_args(["rollback-to", "2"]), stop), timeout=2)

    assert code == EXIT_INTERRUPTED
    assert [e.outcome for e in audit.query()] == [RollbackOutcome.INITIATED, RollbackOutcome.CANCELLED]
