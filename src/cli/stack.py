"""
Stack deploy/destroy/events commands.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from botocore.exceptions import BotoCoreError, ClientError

from cloudformation import Stack, StackController, StackMonitor, format_event
from cloudformation.errors import ErrorKind, ForgeError, classify_error
from cloudformation.events import EPOCH
from cloudformation.monitor import DEPLOY_SUCCESS_STATUSES, DESTROY_SUCCESS_STATUSES
from cloudformation.parsers import parse_parameter_overrides
from config import ForgeConfig
from iam import CredentialSession

logger = logging.getLogger(__name__)

CLI_ERRORS = (ForgeError, ClientError, BotoCoreError)


class ForgeContext:
    """State shared by all commands of one CLI invocation."""

    def __init__(
        self,
        config: ForgeConfig,
        stack: Stack,
        assume_role_arn: Optional[str] = None,
        mfa_token: Optional[str] = None,
        mfa_serial: Optional[str] = None,
    ):
        self.config = config
        self.stack = stack
        self.assume_role_arn = assume_role_arn
        self.mfa_token = mfa_token
        self.mfa_serial = mfa_serial
        self._controller: Optional[StackController] = None

    def connect(self) -> StackController:
        """Create the AWS session, assume the requested role, and return a controller."""
        if self._controller is None:
            session = CredentialSession(self.config)
            if self.assume_role_arn:
                if self.mfa_token:
                    session.assume_role_with_mfa(self.assume_role_arn, self.mfa_token, self.mfa_serial or "")
                else:
                    session.assume_role(self.assume_role_arn)
            self._controller = StackController(session)
        return self._controller

    def monitor(self) -> StackMonitor:
        """Create a monitor that prints each new event."""
        return StackMonitor(
            self.connect(),
            poll_interval=self.config.poll_interval,
            on_event=lambda event: click.echo(format_event(event)),
        )


def _fail(error: Exception) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.command()
@click.option(
    "--template-file",
    "-t",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to the CloudFormation template to be deployed",
)
@click.option("--template-url", help="S3 URL of the CloudFormation template to be deployed")
@click.option(
    "--parameters-file",
    "-p",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File with parameters for this stack (repeatable, later files win)",
)
@click.option("--parameter", "-P", multiple=True, help="Parameter override (KEY=VALUE)")
@click.option(
    "--tags-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File with the tags for this stack",
)
@click.option(
    "--stack-policy-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Stack policy to apply to this stack and its nested stacks",
)
@click.option("--termination-protection", is_flag=True, help="Enable termination protection")
@click.pass_obj
def deploy(
    forge: ForgeContext,
    template_file: Optional[Path],
    template_url: Optional[str],
    parameters_file: Tuple[Path, ...],
    parameter: Tuple[str, ...],
    tags_file: Optional[Path],
    stack_policy_file: Optional[Path],
    termination_protection: bool,
) -> None:
    """Deploy a CloudFormation stack."""
    if bool(template_file) == bool(template_url):
        raise click.UsageError("Exactly one of --template-file or --template-url is required")

    stack = forge.stack
    try:
        if template_file:
            stack.template_body = template_file.read_text()
        else:
            stack.template_url = template_url
        stack.parameter_bodies = [p.read_text() for p in parameters_file]
        stack.parameter_overrides = parse_parameter_overrides(parameter)
        if tags_file:
            stack.tags_body = tags_file.read_text()
        if stack_policy_file:
            stack.stack_policy_body = stack_policy_file.read_text()
        stack.termination_protection = termination_protection

        controller = forge.connect()

        after = EPOCH
        if stack.stack_name:
            try:
                controller.get_stack_info(stack)
                after = controller.get_last_event_time(stack)
            except ClientError as e:
                if classify_error(e) is not ErrorKind.STACK_NOT_FOUND:
                    raise
                logger.debug(f"Stack {stack.stack_name} not found, events will be shown from the start")

        result = controller.deploy(stack)
        if result.no_updates:
            click.echo(result.message)
            return

        click.echo(f"🚀 {result.message}")
        forge.monitor().wait(stack, after, DEPLOY_SUCCESS_STATUSES)

        policy_result = result.run_post_actions()
        if policy_result is not None:
            for failed_stack, reason in policy_result.failures.items():
                click.echo(f"⚠️  Failed to set stack policy on {failed_stack}: {reason}", err=True)

        click.echo(f"✅ Stack {stack.stack_name} deployed successfully")

    except CLI_ERRORS as e:
        _fail(e)


@click.command()
@click.pass_obj
def destroy(forge: ForgeContext) -> None:
    """Destroy a CloudFormation stack."""
    stack = forge.stack
    try:
        controller = forge.connect()
        try:
            controller.get_stack_info(stack)
        except ClientError as e:
            if classify_error(e) is not ErrorKind.STACK_NOT_FOUND:
                raise
            click.echo(f"Stack {stack.stack_name or stack.stack_id} does not exist")
            return

        after = controller.get_last_event_time(stack)
        controller.destroy(stack)
        forge.monitor().wait(stack, after, DESTROY_SUCCESS_STATUSES)
        click.echo(f"✅ Stack {stack.stack_name} deleted successfully")

    except CLI_ERRORS as e:
        _fail(e)


@click.command()
@click.pass_obj
def events(forge: ForgeContext) -> None:
    """Show the event history of a stack."""
    stack = forge.stack
    try:
        controller = forge.connect()
        controller.get_stack_info(stack)
        for event in controller.list_events(stack):
            click.echo(format_event(event))

    except CLI_ERRORS as e:
        _fail(e)
