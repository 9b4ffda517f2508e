"""
Tests for the forge command line interface.
"""

from unittest.mock import Mock, patch

import pytest
from botocore.exceptions import ClientError
from click.testing import CliRunner

from cli import __version__
from cli.__main__ import main
from cli.stack import ForgeContext
from cloudformation.errors import NO_UPDATES_MESSAGE, StackDeployFailed, ValidationFailed
from cloudformation.events import EPOCH
from cloudformation.policy import PolicyResult
from cloudformation.stack import DeployResult


def not_found(name="test-stack"):
    """Build the error CloudFormation returns for a missing stack."""
    return ClientError(
        {"Error": {"Code": "ValidationError", "Message": f"Stack with id {name} does not exist"}},
        "DescribeStacks",
    )


@pytest.fixture
def template(tmp_path):
    path = tmp_path / "template.yml"
    path.write_text("Resources: {}\n")
    return path


@pytest.fixture
def controller():
    """Mocked StackController returned by ForgeContext.connect."""
    mock = Mock()
    mock.get_last_event_time.return_value = EPOCH
    with patch.object(ForgeContext, "connect", return_value=mock):
        yield mock


@pytest.fixture
def monitor():
    """Mocked StackMonitor returned by ForgeContext.monitor."""
    mock = Mock()
    with patch.object(ForgeContext, "monitor", return_value=mock):
        yield mock


class TestCLI:
    """Test the forge CLI."""

    def test_version(self) -> None:
        """Test --version prints the version."""
        result = CliRunner().invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self) -> None:
        """Test the commands are registered."""
        result = CliRunner().invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("deploy", "destroy", "events"):
            assert command in result.output

    def test_deploy_requires_one_template(self, controller) -> None:
        """Test deploy without a template is a usage error."""
        result = CliRunner().invoke(main, ["--stack-name", "test-stack", "deploy"])

        assert result.exit_code == 2
        controller.deploy.assert_not_called()

    def test_deploy_rejects_both_templates(self, template, controller) -> None:
        """Test deploy with a file and a URL is a usage error."""
        result = CliRunner().invoke(
            main,
            ["deploy", "--template-file", str(template), "--template-url", "https://example.com/t.yml"],
        )

        assert result.exit_code == 2

    def test_deploy_no_updates(self, template, controller, monitor) -> None:
        """Test 'no updates' exits successfully without waiting."""
        controller.deploy.return_value = DeployResult(message=NO_UPDATES_MESSAGE, no_updates=True)

        result = CliRunner().invoke(main, ["-n", "test-stack", "deploy", "-t", str(template)])

        assert result.exit_code == 0
        assert NO_UPDATES_MESSAGE in result.output
        monitor.wait.assert_not_called()

    def test_deploy_success(self, template, tmp_path, controller, monitor) -> None:
        """Test a deploy reads its inputs, waits, and reports success."""
        params = tmp_path / "params.yml"
        params.write_text("Environment: staging\n")
        tags = tmp_path / "tags.json"
        tags.write_text('{"Team": "search"}')
        controller.deploy.return_value = DeployResult(message="Creating stack test-stack", created=True)

        result = CliRunner().invoke(
            main,
            [
                "--stack-name",
                "test-stack",
                "--cfn-role-name",
                "deployer",
                "deploy",
                "--template-file",
                str(template),
                "-p",
                str(params),
                "-P",
                "Environment=production",
                "--tags-file",
                str(tags),
                "--termination-protection",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Stack test-stack deployed successfully" in result.output

        stack = controller.deploy.call_args.args[0]
        assert stack.stack_name == "test-stack"
        assert stack.cfn_role_name == "deployer"
        assert stack.template_body == "Resources: {}\n"
        assert stack.parameter_bodies == ["Environment: staging\n"]
        assert stack.parameter_overrides == {"Environment": "production"}
        assert stack.tags_body == '{"Team": "search"}'
        assert stack.termination_protection is True
        monitor.wait.assert_called_once()

    def test_deploy_runs_post_actions_after_wait(self, template, controller, monitor) -> None:
        """Test the deferred stack policy runs once the stack is complete."""
        order = []
        monitor.wait.side_effect = lambda *args: order.append("wait")

        def post_action():
            order.append("policy")
            return PolicyResult(failures={"nested-id": "denied"})

        controller.deploy.return_value = DeployResult(message="Creating", created=True, post_action=post_action)

        result = CliRunner().invoke(main, ["-n", "test-stack", "deploy", "-t", str(template)])

        assert result.exit_code == 0
        assert order == ["wait", "policy"]
        assert "nested-id" in result.output

    def test_deploy_new_stack_shows_all_events(self, template, controller, monitor) -> None:
        """Test events are shown from the start when the stack is new."""
        controller.get_stack_info.side_effect = not_found()
        controller.deploy.return_value = DeployResult(message="Creating", created=True)

        result = CliRunner().invoke(main, ["-n", "test-stack", "deploy", "-t", str(template)])

        assert result.exit_code == 0
        controller.get_last_event_time.assert_not_called()
        assert monitor.wait.call_args.args[1] == EPOCH

    def test_deploy_failure_exits_one(self, template, controller, monitor) -> None:
        """Test a failed deploy prints the error and exits 1."""
        controller.deploy.return_value = DeployResult(message="Updating", created=False)
        monitor.wait.side_effect = StackDeployFailed("UPDATE_ROLLBACK_COMPLETE")

        result = CliRunner().invoke(main, ["-n", "test-stack", "deploy", "-t", str(template)])

        assert result.exit_code == 1
        assert "Stack deploy failed! Stack Status: UPDATE_ROLLBACK_COMPLETE" in result.output

    def test_deploy_validation_error(self, template, controller) -> None:
        """Test engine errors exit 1."""
        controller.deploy.side_effect = ValidationFailed("Failed to Validate Template: bad")

        result = CliRunner().invoke(main, ["-n", "test-stack", "deploy", "-t", str(template)])

        assert result.exit_code == 1
        assert "Failed to Validate Template" in result.output

    def test_deploy_bad_override(self, template, controller) -> None:
        """Test a malformed override exits 1 before connecting."""
        result = CliRunner().invoke(main, ["-n", "test-stack", "deploy", "-t", str(template), "-P", "NoEquals"])

        assert result.exit_code == 1
        assert "NoEquals" in result.output
        controller.deploy.assert_not_called()

    def test_destroy_missing_stack(self, controller, monitor) -> None:
        """Test destroying a missing stack succeeds."""
        controller.get_stack_info.side_effect = not_found()

        result = CliRunner().invoke(main, ["-n", "test-stack", "destroy"])

        assert result.exit_code == 0
        assert "does not exist" in result.output
        controller.destroy.assert_not_called()

    def test_destroy(self, controller, monitor) -> None:
        """Test destroy deletes and waits for DELETE_COMPLETE."""
        result = CliRunner().invoke(main, ["-n", "test-stack", "destroy"])

        assert result.exit_code == 0
        controller.destroy.assert_called_once()
        assert monitor.wait.call_args.args[2] == frozenset({"DELETE_COMPLETE"})
        assert "deleted successfully" in result.output

    def test_events(self, controller) -> None:
        """Test events prints each event."""
        event = Mock()
        controller.list_events.return_value = [event]

        with patch("cli.stack.format_event", return_value='{"LogicalResourceId": "Bucket"}'):
            result = CliRunner().invoke(main, ["-n", "test-stack", "events"])

        assert result.exit_code == 0
        assert '"LogicalResourceId": "Bucket"' in result.output

    def test_event_polling_period_option(self, template, controller, monitor) -> None:
        """Test the polling period reaches the config."""
        controller.deploy.return_value = DeployResult(message="Creating", created=True)

        with patch("cli.__main__.ForgeContext", wraps=ForgeContext) as context_cls:
            result = CliRunner().invoke(
                main, ["--event-polling-period", "3", "-n", "test-stack", "deploy", "-t", str(template)]
            )

        assert result.exit_code == 0
        assert context_cls.call_args.kwargs["config"].poll_interval == 3

    def test_event_polling_period_must_be_positive(self) -> None:
        """Test a zero polling period is refused."""
        result = CliRunner().invoke(main, ["--event-polling-period", "0", "events"])

        assert result.exit_code == 2

    @pytest.mark.parametrize("value", ["0", "soon"])
    def test_invalid_polling_period_environment(self, monkeypatch, value) -> None:
        """Test a bad FORGE_EVENT_POLLING_PERIOD is reported without a traceback."""
        monkeypatch.setenv("FORGE_EVENT_POLLING_PERIOD", value)

        result = CliRunner().invoke(main, ["-n", "test-stack", "events"])

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "FORGE_EVENT_POLLING_PERIOD" in result.output or "at least 1 second" in result.output
        assert not isinstance(result.exception, ValueError)
