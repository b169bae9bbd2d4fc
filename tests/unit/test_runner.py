"""Tests for devflow/engine/runner.py - single task execution."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from devflow.engine.runner import TaskRunner, output_tail
from devflow.exceptions import ConfigurationError, HealthCheckError, RetryError, TaskError
from devflow.models.domain import (
    CommandTask,
    ContainerTask,
    CustomHealthCheck,
    ExecutionContext,
    PortBinding,
    TcpHealthCheck,
)


def _gate(*results: bool) -> MagicMock:
    gate = MagicMock()
    gate.probe = AsyncMock(side_effect=list(results))
    return gate


def test_output_tail_keeps_last_lines():
    output = "\n".join(f"line {i}" for i in range(30)) + "\n\n"

    tail = output_tail(output, lines=3)

    assert tail == "line 27\nline 28\nline 29"


# =============================================================================
# Command tasks
# =============================================================================


class TestCommandTask:
    @pytest.mark.asyncio
    async def test_successful_command(self, runner, context, cleanup):
        outcome = await runner.run(CommandTask(name="hello", command="echo hello"), context)

        assert outcome.success is True
        assert outcome.error is None
        assert outcome.duration >= 0
        assert cleanup.handles() == []

    @pytest.mark.asyncio
    async def test_process_registered_while_running(self, runner, context, cleanup):
        seen = []
        original_register = cleanup.register

        def spy(handle):
            seen.append(handle)
            original_register(handle)

        cleanup.register = spy
        await runner.run(CommandTask(name="sleep", command="sleep 0.1"), context)

        assert len(seen) == 1
        assert seen[0].name == "sleep"
        assert seen[0].process_group is True
        assert seen[0].released
        assert cleanup.handles() == []

    @pytest.mark.asyncio
    async def test_non_zero_exit_reports_task_error(self, runner, context):
        outcome = await runner.run(CommandTask(name="migrate", command="echo boom >&2; exit 3"), context)

        assert outcome.success is False
        assert isinstance(outcome.error, TaskError)
        assert outcome.error.task_name == "migrate"
        assert outcome.error.exit_code == 3
        assert "exited with code 3" in outcome.error.message
        assert "boom" in outcome.error.message

    @pytest.mark.asyncio
    async def test_env_precedence(self, runner, tmp_path, monkeypatch):
        """Test task env overrides context env which overrides the process env."""
        monkeypatch.setenv("DEVFLOW_TEST_A", "process")
        monkeypatch.setenv("DEVFLOW_TEST_B", "process")
        monkeypatch.setenv("DEVFLOW_TEST_C", "process")
        context = ExecutionContext(
            env={"DEVFLOW_TEST_B": "context", "DEVFLOW_TEST_C": "context"},
            working_dir=str(tmp_path),
        )
        task = CommandTask(
            name="env",
            command='test "$DEVFLOW_TEST_A" = process && test "$DEVFLOW_TEST_B" = context '
            '&& test "$DEVFLOW_TEST_C" = task',
            env={"DEVFLOW_TEST_C": "task"},
        )

        outcome = await runner.run(task, context)

        assert outcome.success is True, outcome.error
        assert dict(context.env) == {"DEVFLOW_TEST_B": "context", "DEVFLOW_TEST_C": "context"}

    @pytest.mark.asyncio
    async def test_runs_in_task_cwd(self, runner, context, tmp_path):
        (tmp_path / "app").mkdir()
        (tmp_path / "app" / "marker.txt").write_text("x")

        outcome = await runner.run(CommandTask(name="check", command="test -f marker.txt", cwd="app"), context)

        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_cwd_outside_project_rejected_before_spawn(self, runner, context):
        with patch("devflow.engine.runner.run_shell_command", new_callable=AsyncMock) as mock_run:
            outcome = await runner.run(CommandTask(name="escape", command="ls", cwd="../.."), context)

        assert outcome.success is False
        assert isinstance(outcome.error, TaskError)
        assert "escapes" in outcome.error.message
        mock_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsafe_command_rejected(self, runner, context):
        with patch("devflow.engine.runner.run_shell_command", new_callable=AsyncMock) as mock_run:
            outcome = await runner.run(CommandTask(name="sub", command="echo $(cat /etc/passwd)"), context)

        assert outcome.success is False
        assert "command substitution" in outcome.error.message
        mock_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_command(self, runner, context):
        outcome = await runner.run(CommandTask(name="empty"), context)

        assert outcome.success is False
        assert "no command specified" in outcome.error.message

    @pytest.mark.asyncio
    async def test_dry_run_spawns_nothing(self, runner, tmp_path):
        context = ExecutionContext(working_dir=str(tmp_path), dry_run=True)

        with patch("devflow.engine.runner.run_shell_command", new_callable=AsyncMock) as mock_run:
            outcome = await runner.run(CommandTask(name="tests", command="pytest"), context)

        assert outcome.success is True
        mock_run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_commands_are_not_retried(self, runner, context):
        with patch(
            "devflow.engine.runner.run_shell_command",
            new_callable=AsyncMock,
            return_value=("", "flaky", 1),
        ) as mock_run:
            outcome = await runner.run(CommandTask(name="flaky", command="./flaky.sh"), context)

        assert outcome.success is False
        assert mock_run.await_count == 1

    @pytest.mark.asyncio
    async def test_long_line_without_newline(self, runner, context, cleanup):
        task = CommandTask(name="minified", command="head -c 200000 /dev/zero | tr '\\0' x")

        outcome = await runner.run(task, context)

        assert outcome.success is True, outcome.error
        assert cleanup.handles() == []

    @pytest.mark.asyncio
    async def test_unexpected_error_while_running_becomes_task_error(self, runner, context, cleanup):
        async def broken_read(command, *, on_start, **kwargs):
            on_start(4242)
            raise ValueError("chunk exceed the limit")

        with patch("devflow.engine.runner.run_shell_command", side_effect=broken_read):
            outcome = await runner.run(CommandTask(name="noisy", command="./noisy.sh"), context)

        assert outcome.success is False
        assert isinstance(outcome.error, TaskError)
        assert "chunk exceed the limit" in outcome.error.reason
        assert isinstance(outcome.error.__cause__, ValueError)
        assert cleanup.handles() == []

    @pytest.mark.asyncio
    async def test_health_check_gates_command(self, cleanup, fake_api, fast_retry, context):
        """Test a command that starts a background service waits for it."""
        gate = _gate(False, True)
        runner = TaskRunner(cleanup, container_api=fake_api, health_gate=gate, retry_policy=fast_retry)
        task = CommandTask(name="serve", command="true", health_check=TcpHealthCheck(port=8000, interval=0))

        outcome = await runner.run(task, context)

        assert outcome.success is True
        assert gate.probe.await_count == 2

    @pytest.mark.asyncio
    async def test_unhealthy_command_fails(self, cleanup, fast_retry, context):
        gate = _gate(False)
        runner = TaskRunner(cleanup, health_gate=gate, retry_policy=fast_retry)
        task = CommandTask(name="serve", command="true", health_check=TcpHealthCheck(port=1, retries=1, interval=0))

        outcome = await runner.run(task, context)

        assert outcome.success is False
        assert isinstance(outcome.error, HealthCheckError)
        assert gate.probe.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_command_skips_health_check(self, cleanup, fast_retry, context):
        gate = _gate(True)
        runner = TaskRunner(cleanup, health_gate=gate, retry_policy=fast_retry)
        task = CommandTask(name="serve", command="exit 2", health_check=TcpHealthCheck(port=8000, interval=0))

        outcome = await runner.run(task, context)

        assert outcome.error.exit_code == 2
        gate.probe.assert_not_awaited()



# =============================================================================
# Container tasks
# =============================================================================


class TestContainerTask:
    @pytest.mark.asyncio
    async def test_pull_create_start_and_register(self, runner, context, fake_api, cleanup):
        context = ExecutionContext(env={"SHARED": "ctx", "MODE": "ctx"}, working_dir=context.working_dir)
        task = ContainerTask(
            name="db",
            image="postgres:16",
            container_name="dev-db",
            ports=[PortBinding(5432, 5432)],
            env={"MODE": "task"},
        )

        outcome = await runner.run(task, context)

        assert outcome.success is True
        assert [operation for operation, _ in fake_api.calls] == ["pull", "create", "start"]
        created = fake_api.created[0]
        assert created["name"] == "dev-db"
        assert created["env"] == {"SHARED": "ctx", "MODE": "task"}
        assert created["ports"] == [PortBinding(5432, 5432)]
        handles = cleanup.handles()
        assert len(handles) == 1
        assert handles[0].id == created["id"]
        assert handles[0].name == "dev-db"

    @pytest.mark.asyncio
    async def test_pull_is_retried(self, runner, context, fake_api):
        fake_api.pull_failures = 2

        outcome = await runner.run(ContainerTask(name="db", image="postgres:16"), context)

        assert outcome.success is True
        assert [operation for operation, _ in fake_api.calls].count("pull") == 3

    @pytest.mark.asyncio
    async def test_pull_exhaustion_fails_task(self, runner, context, fake_api, cleanup):
        fake_api.pull_failures = 10

        outcome = await runner.run(ContainerTask(name="db", image="postgres:16"), context)

        assert outcome.success is False
        assert isinstance(outcome.error, TaskError)
        assert "image pull failed" in outcome.error.message
        assert isinstance(outcome.error.__cause__, RetryError)
        assert cleanup.handles() == []

    @pytest.mark.asyncio
    async def test_start_exhaustion_discards_container(self, runner, context, fake_api, cleanup):
        fake_api.start_failures = 10

        outcome = await runner.run(ContainerTask(name="web", image="nginx"), context)

        assert outcome.success is False
        assert "container start failed" in outcome.error.message
        assert fake_api.containers == {}
        assert cleanup.handles() == []

    @pytest.mark.asyncio
    async def test_health_check_passes_after_retry(self, cleanup, fake_api, fast_retry, context):
        gate = _gate(False, True)
        runner = TaskRunner(cleanup, container_api=fake_api, health_gate=gate, retry_policy=fast_retry)
        task = ContainerTask(name="db", image="postgres:16", health_check=TcpHealthCheck(port=5432, interval=0))

        outcome = await runner.run(task, context)

        assert outcome.success is True
        assert gate.probe.await_count == 2

    @pytest.mark.asyncio
    async def test_health_check_exhaustion(self, cleanup, fake_api, fast_retry, context):
        """Test an unhealthy service fails the task but stays registered."""
        gate = _gate(False, False, False)
        runner = TaskRunner(cleanup, container_api=fake_api, health_gate=gate, retry_policy=fast_retry)
        check = TcpHealthCheck(port=5432, retries=3, interval=0)

        outcome = await runner.run(ContainerTask(name="db", image="postgres:16", health_check=check), context)

        assert outcome.success is False
        assert isinstance(outcome.error, HealthCheckError)
        assert outcome.error.check is check
        assert isinstance(outcome.error.__cause__, RetryError)
        assert gate.probe.await_count == 3
        assert len(cleanup.handles()) == 1
        assert ("remove", cleanup.handles()[0].id) not in fake_api.calls

    @pytest.mark.asyncio
    async def test_custom_check_without_predicate_raises(self, runner, context, fake_api):
        task = ContainerTask(name="db", image="postgres:16", health_check=CustomHealthCheck(port=0))

        with pytest.raises(ConfigurationError):
            await runner.run(task, context)

        assert fake_api.calls == []

    @pytest.mark.asyncio
    async def test_missing_image(self, runner, context):
        outcome = await runner.run(ContainerTask(name="db"), context)

        assert outcome.success is False
        assert "no image specified" in outcome.error.message

    @pytest.mark.asyncio
    async def test_no_engine_configured(self, cleanup, context):
        runner = TaskRunner(cleanup)

        outcome = await runner.run(ContainerTask(name="db", image="postgres:16"), context)

        assert outcome.success is False
        assert "no container engine" in outcome.error.message

    @pytest.mark.asyncio
    async def test_dry_run_touches_no_engine(self, runner, fake_api, tmp_path):
        context = ExecutionContext(working_dir=str(tmp_path), dry_run=True)

        outcome = await runner.run(ContainerTask(name="db", image="postgres:16"), context)

        assert outcome.success is True
        assert fake_api.calls == []
