# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Host action tests: the closed action set, each handler's command
sequence and the generated command document.
"""

from pathlib import Path

import pytest

from stackops.actions import (
    CLOUDWATCH_CTL,
    HANDLERS,
    Action,
    ActionReport,
    run_action,
    render_ssm_document,
)
from stackops.backup import BackupResult, TargetOutcome, TargetStatus
from stackops.exceptions import UnknownAction
from stackops.store import ObjectStore

from conftest import FakeCompose, RecordingRunner


# ============================================================================
# Action set
# ============================================================================

def test_parse_actions_and_aliases():
    assert Action.parse("status") is Action.STATUS
    assert Action.parse("  Restart-Caddy ") is Action.RESTART_CADDY
    assert Action.parse("update") is Action.UPDATE_IMAGES
    assert Action.parse("backup") is Action.BACKUP_VOLUMES


@pytest.mark.parametrize("name", ["restore", "rm -rf /", "", "status; reboot"])
def test_unknown_actions_are_rejected(name):
    with pytest.raises(UnknownAction) as exc_info:
        Action.parse(name)
    assert "status" in exc_info.value.message


def test_every_action_has_a_handler():
    assert set(HANDLERS) == set(Action)


def test_service_of_per_service_actions():
    assert Action.RESTART_OPENWEBUI.service == "openwebui"
    assert Action.LOGS_LITELLM.service == "litellm"
    assert Action.RESTART.service is None
    assert Action.STATUS.service is None


def test_report_render():
    report = ActionReport(Action.STATUS)
    report.add("Service status", "caddy  running\n")
    report.add("Empty", "")
    assert report.render() == "=== Service status ===\ncaddy  running\n=== Empty ==="


# ============================================================================
# Command document
# ============================================================================

def test_ssm_document_allows_exactly_the_action_set():
    document = render_ssm_document()
    action_param = document["parameters"]["action"]

    assert document["schemaVersion"] == "2.2"
    assert action_param["allowedValues"] == [a.value for a in Action]
    assert "restore" not in action_param["allowedValues"]
    assert document["parameters"]["lines"]["default"] == "50"


def test_ssm_document_runs_the_cli():
    step = render_ssm_document(command="/usr/local/bin/stackops")["mainSteps"][0]
    assert step["action"] == "aws:runShellScript"
    assert step["inputs"]["runCommand"][-1] == (
        "/usr/local/bin/stackops run '{{ action }}' --lines '{{ lines }}'"
    )


# ============================================================================
# Handlers
# ============================================================================

@pytest.mark.asyncio
async def test_status(test_config, fake_compose: FakeCompose, runner: RecordingRunner):
    runner.respond(["free", "-h"], stdout="Mem: 2.0Gi")

    report = await run_action(Action.STATUS, test_config, compose=fake_compose, runner=runner)

    assert report.exit_code == 0
    assert runner.calls == [["docker", "system", "df"], ["df", "-h", "/"], ["free", "-h"]]
    assert ("logs", ("caddy", 10)) in fake_compose.calls
    assert "=== Memory ===\nMem: 2.0Gi" in report.render()


@pytest.mark.asyncio
async def test_update_images(test_config, fake_compose: FakeCompose, runner: RecordingRunner):
    report = await run_action(Action.UPDATE_IMAGES, test_config, compose=fake_compose, runner=runner)

    assert report.exit_code == 0
    assert fake_compose.methods() == ["pull", "up", "ps"]
    assert runner.calls == [["docker", "image", "prune", "-f"]]


@pytest.mark.asyncio
async def test_restart_stack(test_config, fake_compose: FakeCompose, runner):
    await run_action(Action.RESTART, test_config, compose=fake_compose, runner=runner)
    assert fake_compose.methods()[:3] == ["down", "up", "ps"]
    assert ("logs", ("openwebui", 20)) in fake_compose.calls


@pytest.mark.asyncio
async def test_restart_single_service(test_config, fake_compose: FakeCompose, runner):
    await run_action(Action.RESTART_LITELLM, test_config, compose=fake_compose, runner=runner)
    assert fake_compose.calls == [
        ("restart", ("litellm",)),
        ("ps", ("litellm",)),
        ("logs", ("litellm", 30)),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("lines,expected", [(100, 100), (0, 50), (-5, 50)])
async def test_service_logs_lines(test_config, fake_compose: FakeCompose, runner, lines, expected):
    report = await run_action(
        Action.LOGS_OPENWEBUI, test_config, lines=lines, compose=fake_compose, runner=runner
    )
    assert fake_compose.calls == [("logs", ("openwebui", expected))]
    assert "openwebui log line" in report.render()


@pytest.mark.asyncio
async def test_redeploy_fast_forward(test_config, fake_compose: FakeCompose, runner: RecordingRunner):
    await run_action(Action.REDEPLOY, test_config, compose=fake_compose, runner=runner)

    assert runner.calls[0] == ["git", "pull", "--ff-only"]
    assert runner.cwds[0] == test_config.app_dir
    assert ["git", "fetch", "--all", "--prune"] not in runner.calls
    assert fake_compose.methods() == ["pull", "up", "ps"]


@pytest.mark.asyncio
async def test_redeploy_falls_back_to_fetch(test_config, fake_compose: FakeCompose, runner: RecordingRunner):
    runner.respond(["git", "pull"], returncode=1, stderr="fatal: Not possible to fast-forward")

    report = await run_action(Action.REDEPLOY, test_config, compose=fake_compose, runner=runner)

    assert runner.calls[1] == ["git", "fetch", "--all", "--prune"]
    assert report.exit_code == 0
    assert "Not possible to fast-forward" in report.render()


@pytest.mark.asyncio
async def test_failing_command_ends_action(test_config, runner: RecordingRunner):
    compose = FakeCompose(fail_on=["pull"])

    report = await run_action(Action.UPDATE_IMAGES, test_config, compose=compose, runner=runner)

    assert report.exit_code == 1
    assert compose.methods() == ["pull"]
    assert report.sections[-1] == ("Error", "pull failed")


@pytest.mark.asyncio
async def test_cloudwatch_restart(test_config, fake_compose, runner: RecordingRunner):
    runner.respond([CLOUDWATCH_CTL, "-a", "status"], stdout='{"status": "running"}')

    report = await run_action(Action.CLOUDWATCH_RESTART, test_config, compose=fake_compose, runner=runner)

    assert runner.calls == [
        [CLOUDWATCH_CTL, "-a", "stop"],
        [CLOUDWATCH_CTL, "-m", "ec2", "-a", "start"],
        [CLOUDWATCH_CTL, "-a", "status"],
    ]
    assert report.exit_code == 0
    assert fake_compose.calls == []


@pytest.mark.asyncio
async def test_cloudwatch_status_propagates_exit_code(test_config, fake_compose, runner: RecordingRunner):
    runner.respond([CLOUDWATCH_CTL], returncode=127, stderr="not installed")

    report = await run_action(Action.CLOUDWATCH_STATUS, test_config, compose=fake_compose, runner=runner)
    assert report.exit_code == 127


@pytest.mark.asyncio
async def test_backup_action_summarizes_run(test_config, fake_compose, runner, monkeypatch):
    async def fake_run_backup(config, *, compose, runner):
        return BackupResult(
            run_id="01J0000000000000000000000",
            timestamp="20250101_120000",
            bucket="test-bucket",
            project_name="llm-stack",
            outcomes=[
                TargetOutcome("openwebui-data", TargetStatus.OK, key="backups/openwebui-data_20250101_120000.tar.gz", size=2048),
                TargetOutcome("caddy-data", TargetStatus.SKIPPED, reason="Volume not found: llm-stack_caddy-data"),
            ],
        )

    monkeypatch.setattr("stackops.actions.run_backup", fake_run_backup)

    report = await run_action(Action.BACKUP_VOLUMES, test_config, compose=fake_compose, runner=runner)

    text = report.render()
    assert "openwebui-data: ok backups/openwebui-data_20250101_120000.tar.gz (2.0 KiB)" in text
    assert "caddy-data: skipped - Volume not found" in text
    assert report.exit_code == 1


@pytest.mark.asyncio
async def test_list_backups_action(test_config, store: ObjectStore, s3_endpoint: str, temp_dir: Path):
    config = test_config.with_updates(bucket=store.bucket, endpoint_url=s3_endpoint)

    report = await run_action(Action.LIST_BACKUPS, config, runner=RecordingRunner())
    assert "No backups found" in report.render()

    payload = temp_dir / "payload"
    payload.write_bytes(b"x" * 10)
    await store.upload(payload, "backups/caddy-data_20250101_120000.tar.gz")

    report = await run_action(Action.LIST_BACKUPS, config, runner=RecordingRunner())
    text = report.render()
    assert f"=== Backups in s3://{store.bucket}/backups/ ===" in text
    assert "backups/caddy-data_20250101_120000.tar.gz" in text
