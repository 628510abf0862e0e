"""
Tests for DeploymentRun bookkeeping.
"""

import pytest

from deployctl.config import DeploymentTarget
from deployctl.models import Artifact, DeploymentRun, PhaseStatus, RunFinishedError, RunKind, RunOutcome

TARGET = DeploymentTarget(host="prod-server", user="deploy", path="/opt/app", port=8080)


class TestDeploymentRun:
    def test_plan_starts_pending(self):
        run = DeploymentRun.plan(RunKind.DEPLOY, TARGET, ["A", "B"])

        assert [p.status for p in run.phases] == [PhaseStatus.PENDING, PhaseStatus.PENDING]
        assert run.id.startswith("r-")
        assert not run.finished

    def test_only_one_phase_runs_at_a_time(self):
        run = DeploymentRun.plan(RunKind.DEPLOY, TARGET, ["A", "B"])
        run.start_phase("A")

        with pytest.raises(RuntimeError, match="still running"):
            run.start_phase("B")

        run.succeed_phase("A")
        run.start_phase("B")
        assert run.running_phase.name == "B"

    def test_finished_run_is_frozen(self):
        run = DeploymentRun.plan(RunKind.DEPLOY, TARGET, ["A"])
        run.finish(RunOutcome.SUCCESS)

        with pytest.raises(RunFinishedError):
            run.start_phase("A")
        with pytest.raises(RunFinishedError):
            run.note("late")
        with pytest.raises(RunFinishedError):
            run.finish(RunOutcome.FAILED)

    def test_unknown_phase(self):
        run = DeploymentRun.plan(RunKind.DEPLOY, TARGET, ["A"])
        with pytest.raises(KeyError):
            run.phase("Z")

    def test_to_dict(self):
        run = DeploymentRun.plan(RunKind.ROLLBACK, TARGET, ["RollingBack"])
        run.start_phase("RollingBack")
        run.fail_phase("RollingBack", "NoBackupAvailable: no backup found under /opt/app/backups")
        run.finish(RunOutcome.FAILED)

        data = run.to_dict()

        assert data["kind"] == "rollback"
        assert data["outcome"] == "failed"
        assert data["target"]["host"] == "prod-server"
        assert data["phases"][0]["status"] == "failed"
        assert data["phases"][0]["duration"] >= 0
        assert run.failed_phase.name == "RollingBack"


def test_artifact_binary_name():
    assert Artifact(binary="/build/release/ggen").binary_name == "ggen"
