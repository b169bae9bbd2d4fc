"""Tests for devflow.models.domain module."""

import pytest

from devflow.enums import NodeState, ResourceKind, ResourceState, TaskKind
from devflow.exceptions import ConfigurationError
from devflow.models.domain import (
    CommandTask,
    ContainerTask,
    ExecutionContext,
    HttpHealthCheck,
    PortBinding,
    ResourceHandle,
    TaskOutcome,
    Workflow,
    WorkflowResult,
)


class TestPortBinding:
    def test_parse_simple(self):
        binding = PortBinding.parse("5433:5432")

        assert binding == PortBinding(host_port=5433, container_port=5432)
        assert binding.container_key == "5432/tcp"

    def test_parse_ip_and_protocol(self):
        binding = PortBinding.parse("127.0.0.1:5353:53/udp")

        assert binding.host_ip == "127.0.0.1"
        assert binding.protocol == "udp"
        assert binding.container_key == "53/udp"

    @pytest.mark.parametrize("value", ["5432", "abc:5432", "0:5432", "5432:70000", "80:80/sctp"])
    def test_invalid_bindings(self, value):
        with pytest.raises(ConfigurationError):
            PortBinding.parse(value)


class TestTasks:
    def test_kinds(self):
        assert CommandTask(name="lint", command="ruff").kind == TaskKind.COMMAND
        assert ContainerTask(name="db", image="postgres").kind == TaskKind.DOCKER

    def test_container_display_name(self):
        assert ContainerTask(name="db", image="postgres:16").display_name == "postgres:16"
        assert ContainerTask(name="db", image="postgres:16", container_name="dev-db").display_name == "dev-db"

    def test_defaults_are_not_shared(self):
        first = CommandTask(name="a")
        second = CommandTask(name="b")
        first.env["X"] = "1"
        first.depends_on.add("c")

        assert second.env == {}
        assert second.depends_on == set()

    def test_http_check_url_adds_slash(self):
        assert HttpHealthCheck(port=8080, path="ready").url == "http://localhost:8080/ready"
        assert HttpHealthCheck(port=8080, host="api").url == "http://api:8080/"


class TestExecutionContext:
    def test_env_is_read_only_copy(self):
        source = {"CI": "1"}
        context = ExecutionContext(env=source)
        source["CI"] = "0"

        assert context.env["CI"] == "1"
        with pytest.raises(TypeError):
            context.env["NEW"] = "x"  # type: ignore[index]

    def test_frozen(self):
        context = ExecutionContext()

        with pytest.raises(AttributeError):
            context.dry_run = True  # type: ignore[misc]


class TestResourceHandle:
    def test_container_handle(self):
        handle = ResourceHandle.container("0123456789abcdef" * 4)

        assert handle.kind == ResourceKind.CONTAINER
        assert handle.name == "0123456789ab"
        assert handle.state == ResourceState.REGISTERED
        assert not handle.released

    def test_process_group_handle(self):
        handle = ResourceHandle.process(321, "tests", process_group=True)

        assert handle.kind == ResourceKind.PROCESS
        assert handle.id == "321"
        assert handle.process_group is True


def test_workflow_result_success():
    result = WorkflowResult(workflow="ci", outcomes={"a": TaskOutcome("a", True), "b": TaskOutcome("b", True)})

    assert result.success
    result.outcomes["c"] = TaskOutcome("c", False)
    assert not result.success


def test_workflow_task_names_keep_order():
    workflow = Workflow("ci", [CommandTask(name="b"), CommandTask(name="a")])

    assert workflow.task_names() == ["b", "a"]


def test_node_state_terminal():
    assert NodeState.SUCCEEDED.is_terminal
    assert NodeState.FAILED.is_terminal
    assert not NodeState.RUNNING.is_terminal
