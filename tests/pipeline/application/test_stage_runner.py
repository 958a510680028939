"""
Tests for the Stage Runner.

Runs real child processes (the test interpreter) to check action ordering,
secret injection and masking, artifact staging and per-action logs.
"""

import pytest

from conftest import RecordingSecretStore, action, py, stage
from convoy.pipeline.application.artifact_bus import ArtifactBus
from convoy.pipeline.application.stage_runner import StageRunner
from convoy.pipeline.domain.enums import StageStatus
from convoy.pipeline.domain.models import ActionDefinition, OutputSpec


@pytest.fixture
def runner(executor, tmp_path):
    """Stage runner writing logs under tmp_path/logs."""
    return StageRunner(
        executor,
        run_id="run-1",
        pipeline_name="demo",
        logs_dir=tmp_path / "logs",
        protected_secrets=["REGISTRY_TOKEN", "SCANNER_TOKEN"],
    )


@pytest.fixture
def bus():
    return ArtifactBus()


class TestActionOrdering:
    """Sequential action execution."""

    @pytest.mark.asyncio
    async def test_actions_run_in_order_with_logs(self, runner, bus, secret_store, tmp_path):
        """Test that each action runs in order and gets its own log file."""
        s = stage(
            "build",
            action("first", "print('one')"),
            action("second", "print('two')"),
        )

        record = await runner.execute(s, bus, secret_store)

        assert record.status == StageStatus.SUCCEEDED
        assert [a.name for a in record.actions] == ["first", "second"]
        assert all(a.exit_code == 0 for a in record.actions)
        first_log = tmp_path / "logs" / "build" / "01-first.log"
        second_log = tmp_path / "logs" / "build" / "02-second.log"
        assert record.logs == [str(first_log), str(second_log)]
        assert "one" in first_log.read_text()
        assert "two" in second_log.read_text()

    @pytest.mark.asyncio
    async def test_first_failure_aborts_remaining_actions(self, runner, bus, secret_store, tmp_path):
        """Test that actions after a failing one never run."""
        marker = tmp_path / "marker"
        s = stage(
            "scan",
            action("fails", "import sys; sys.stderr.write('scanner crashed'); sys.exit(3)"),
            action("never", f"open({str(marker)!r}, 'w').close()"),
        )

        record = await runner.execute(s, bus, secret_store)

        assert record.status == StageStatus.FAILED
        assert record.error_kind == "action_failed"
        assert "exited with code 3" in record.error
        assert "scanner crashed" in record.output
        assert [a.name for a in record.actions] == ["fails"]
        assert record.actions[0].exit_code == 3
        assert not marker.exists()
        assert record.finished_at is not None

    @pytest.mark.asyncio
    async def test_action_timeout(self, runner, bus, secret_store):
        """Test that an action exceeding its timeout fails the stage."""
        s = stage("slow", action("sleepy", "import time; time.sleep(10)", timeout=0.3))

        record = await runner.execute(s, bus, secret_store)

        assert record.status == StageStatus.FAILED
        assert record.actions[0].timed_out is True
        assert "timed out" in record.error

    @pytest.mark.asyncio
    async def test_output_tail_is_bounded(self, executor, bus, secret_store):
        """Test that only the tail of failing output is kept on the record."""
        runner = StageRunner(executor, run_id="run-1", output_tail_chars=10)
        s = stage("noisy", action("spam", "import sys; print('x' * 100 + 'END'); sys.exit(1)"))

        record = await runner.execute(s, bus, secret_store)

        assert record.output.startswith("...")
        assert record.output.endswith("END\n") or record.output.endswith("END")
        assert len(record.output) == 13


class TestArtifacts:
    """Output staging and artifact consumption."""

    @pytest.mark.asyncio
    async def test_outputs_published_on_success(self, runner, bus, secret_store):
        """Test that declared outputs reach the bus with the stage as producer."""
        s = stage("build", action("image", "pass", outputs={"image_ref": "registry.local/app:${run.id}"}))

        record = await runner.execute(s, bus, secret_store)

        assert record.status == StageStatus.SUCCEEDED
        assert bus.get("image_ref") == "registry.local/app:run-1"
        assert bus.producer_of("image_ref") == "build"
        assert record.artifacts == {"image_ref": "registry.local/app:run-1"}

    @pytest.mark.asyncio
    async def test_failed_stage_publishes_nothing(self, runner, bus, secret_store):
        """Test that outputs of earlier actions are discarded when a later action fails."""
        s = stage(
            "build",
            action("image", "pass", outputs={"image_ref": "app:1"}),
            action("push", "import sys; sys.exit(1)"),
        )

        record = await runner.execute(s, bus, secret_store)

        assert record.status == StageStatus.FAILED
        assert "image_ref" not in bus
        assert record.artifacts == {}

    @pytest.mark.asyncio
    async def test_staged_output_visible_within_stage(self, runner, bus, secret_store):
        """Test that a later action reads an earlier action's output before publication."""
        producer = action("digest", "print('  sha256:abc  ')", outputs={"digest": OutputSpec(stdout=True)})
        consumer = ActionDefinition(
            name="verify",
            run=py("import sys; assert sys.argv[1] == 'sha256:abc', sys.argv") + ("${artifacts.digest}",),
        )

        record = await runner.execute(stage("build", producer, consumer), bus, secret_store)

        assert record.status == StageStatus.SUCCEEDED
        assert bus.get("digest") == "sha256:abc"

    @pytest.mark.asyncio
    async def test_reads_artifact_from_bus(self, runner, bus, secret_store):
        """Test that ${artifacts.*} arguments resolve from earlier stages."""
        bus.put("image_ref", "app:42", producer="build")
        check = ActionDefinition(
            name="scan",
            run=py("import sys; assert sys.argv[1] == 'app:42'") + ("${artifacts.image_ref}",),
        )

        record = await runner.execute(stage("scan", check), bus, secret_store)

        assert record.status == StageStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_missing_input_fails_before_running(self, runner, bus, secret_store):
        """Test that an unpublished input is a configuration error and nothing executes."""
        s = stage("scan", action("trivy", "pass", inputs=("image_ref",)))

        record = await runner.execute(s, bus, secret_store)

        assert record.status == StageStatus.FAILED
        assert record.error_kind == "artifact_unavailable"
        assert "image_ref" in record.error
        assert record.actions == []

    @pytest.mark.asyncio
    async def test_path_output_resolved_against_cwd(self, runner, bus, secret_store, tmp_path):
        """Test that a path output is relative to the action's working directory."""
        s = stage(
            "scan",
            action(
                "report",
                "open('report.json', 'w').write('{}')",
                cwd=str(tmp_path),
                outputs={"scan_report": OutputSpec(path="report.json")},
            ),
        )

        record = await runner.execute(s, bus, secret_store)

        assert record.status == StageStatus.SUCCEEDED
        assert bus.get("scan_report") == str((tmp_path / "report.json").resolve())

    @pytest.mark.asyncio
    async def test_missing_output_file_fails(self, runner, bus, secret_store, tmp_path):
        """Test that a declared output file that was not produced fails the stage."""
        s = stage(
            "scan",
            action("report", "pass", cwd=str(tmp_path), outputs={"scan_report": OutputSpec(path="missing.json")}),
        )

        record = await runner.execute(s, bus, secret_store)

        assert record.status == StageStatus.FAILED
        assert record.error_kind == "action_failed"
        assert "did not produce declared output 'scan_report'" in record.error
        assert "scan_report" not in bus

    @pytest.mark.asyncio
    async def test_extra_variables(self, runner, bus, secret_store):
        """Test that caller-supplied namespaces such as target are rendered."""
        check = ActionDefinition(
            name="smoke",
            run=py("import sys; assert sys.argv[1:] == ['4242', 'smoke', 'run-1']")
            + ("${target.id}", "${stage.id}", "${run.id}"),
        )

        record = await runner.execute(stage("smoke", check), bus, secret_store, variables={"target": {"id": "4242"}})

        assert record.status == StageStatus.SUCCEEDED


class TestSecrets:
    """Just-in-time secret injection."""

    @pytest.mark.asyncio
    async def test_only_declared_secrets_resolved_and_masked(self, runner, bus, secret_store, tmp_path, monkeypatch):
        """Test that an action sees only its declared secrets and their values never reach logs."""
        monkeypatch.setenv("SCANNER_TOKEN", "leaked-from-parent")
        code = (
            "import os; "
            "print('token=' + os.environ['REGISTRY_TOKEN']); "
            "print('scanner=' + os.environ.get('SCANNER_TOKEN', 'absent'))"
        )
        s = stage("build", action("login", code, secrets=("REGISTRY_TOKEN",)))

        record = await runner.execute(s, bus, secret_store)

        assert record.status == StageStatus.SUCCEEDED
        assert secret_store.requested == ["REGISTRY_TOKEN"]
        log_text = (tmp_path / "logs" / "build" / "01-login.log").read_text()
        assert "token=***" in log_text
        assert "reg-s3cr3t-value" not in log_text
        assert "scanner=absent" in log_text

    @pytest.mark.asyncio
    async def test_secret_masked_in_failure_output(self, runner, bus, secret_store):
        """Test that a failing action's captured output is masked."""
        s = stage(
            "build",
            action("leak", "import os, sys; print(os.environ['REGISTRY_TOKEN']); sys.exit(2)", secrets=("REGISTRY_TOKEN",)),
        )

        record = await runner.execute(s, bus, secret_store)

        assert record.status == StageStatus.FAILED
        assert "***" in record.output
        assert "reg-s3cr3t-value" not in record.output

    @pytest.mark.asyncio
    async def test_stages_without_secrets_never_query_store(self, runner, bus, secret_store):
        """Test that the store is not consulted when nothing is declared."""
        await runner.execute(stage("lint", action("flake", "pass")), bus, secret_store)

        assert secret_store.requested == []

    @pytest.mark.asyncio
    async def test_missing_secret_fails_stage(self, runner, bus):
        """Test that an unresolvable declared secret fails before the command runs."""
        store = RecordingSecretStore({})
        s = stage("publish", action("push", "pass", secrets=("REGISTRY_TOKEN",)))

        record = await runner.execute(s, bus, store)

        assert record.status == StageStatus.FAILED
        assert record.error_kind == "secret_unavailable"
        assert record.actions == []
        assert store.requested == ["REGISTRY_TOKEN"]
