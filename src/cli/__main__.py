#!/usr/bin/env python3
"""Main CLI entry point for forge."""

import logging
import sys
from typing import Optional

import click

from cli import __version__
from cli.stack import ForgeContext, deploy, destroy, events
from cloudformation import Stack
from cloudformation.errors import ForgeError
from config import get_forge_config


def setup_logging(verbose: bool) -> None:
    """Send log records to stderr; DEBUG when verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # botocore is very chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


@click.group()
@click.version_option(__version__, prog_name="forge")
@click.option("--stack-name", "-n", default="", help="Name of the stack to manage")
@click.option(
    "--cfn-role-name",
    default="",
    help="Name of IAM role in the destination account for the CloudFormation service to assume",
)
@click.option("--assume-role-arn", help="ARN of IAM role to assume BEFORE making requests to CloudFormation")
@click.option("--mfa-token", help="MFA token code used when assuming --assume-role-arn")
@click.option("--mfa-serial", help="MFA device serial (detected automatically when omitted)")
@click.option(
    "--event-polling-period",
    type=click.IntRange(min=1),
    help="Polling period in seconds for monitoring stack events [default: 10]",
)
@click.option("--region", help="AWS region")
@click.option("--profile", help="AWS profile to use")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    stack_name: str,
    cfn_role_name: str,
    assume_role_arn: Optional[str],
    mfa_token: Optional[str],
    mfa_serial: Optional[str],
    event_polling_period: Optional[int],
    region: Optional[str],
    profile: Optional[str],
    verbose: bool,
) -> None:
    """Forge is a CD friendly CloudFormation deployment tool."""
    setup_logging(verbose)
    try:
        config = get_forge_config(region=region, profile=profile, poll_interval=event_polling_period)
    except ForgeError as e:
        raise click.ClickException(str(e)) from e
    ctx.obj = ForgeContext(
        config=config,
        stack=Stack(stack_name=stack_name, cfn_role_name=cfn_role_name),
        assume_role_arn=assume_role_arn,
        mfa_token=mfa_token,
        mfa_serial=mfa_serial,
    )


main.add_command(deploy)
main.add_command(destroy)
main.add_command(events)


if __name__ == "__main__":
    main()
