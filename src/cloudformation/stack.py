"""
Stack lifecycle: create-or-update and destroy of a single CloudFormation stack.
"""

import functools
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    NO_UPDATES_MESSAGE,
    ErrorKind,
    MissingStackID,
    MissingStackNameOrID,
    RemoteCallFailed,
    ValidationFailed,
    classify_error,
    error_message,
)
from .events import EPOCH, EventLogReader, StackEvent
from .parsers import parse_parameters, parse_tags
from .policy import PolicyResult, StackPolicyPropagator, parse_policy

logger = logging.getLogger(__name__)

CAPABILITY_AUTO_EXPAND = "CAPABILITY_AUTO_EXPAND"

AWS_ERRORS = (ClientError, BotoCoreError)


@dataclass
class Stack:
    """
    A stack deployment: what to deploy and what was last seen of it.

    ``stack_id`` is preferred over ``stack_name`` once known, so that the
    object always refers to the same physical stack even if another stack
    with the same name is created later.
    """

    stack_name: str = ""
    stack_id: str = ""
    template_body: str = ""
    template_url: str = ""
    parameter_bodies: List[str] = field(default_factory=list)
    parameter_overrides: Dict[str, str] = field(default_factory=dict)
    tags_body: str = ""
    stack_policy_body: str = ""
    cfn_role_name: str = ""
    termination_protection: bool = False
    stack_info: Optional[Dict[str, Any]] = None

    def template_args(self) -> Dict[str, str]:
        """Template arguments shared by validate/create/update calls."""
        if bool(self.template_body) == bool(self.template_url):
            raise ValidationFailed("Exactly one of template body or template URL must be set")
        if self.template_body:
            return {"TemplateBody": self.template_body}
        return {"TemplateURL": self.template_url}


@dataclass
class DeployResult:
    """Result of a deploy call."""

    message: str = ""
    no_updates: bool = False
    created: bool = False
    post_action: Optional[Callable[[], PolicyResult]] = None

    def run_post_actions(self) -> Optional[PolicyResult]:
        """Run the deferred action, if any, and return its result."""
        if self.post_action is None:
            return None
        return self.post_action()


class StackController:
    """Drive CloudFormation to create, update, or delete a stack."""

    def __init__(self, session):
        """
        Initialize stack controller.

        Args:
            session: CredentialSession providing the AWS clients
        """
        self.session = session
        self.events = EventLogReader(session)
        self.policies = StackPolicyPropagator(session)

    @property
    def cloudformation(self):
        """Get CloudFormation client of the active session."""
        return self.session.cloudformation

    def get_stack_info(self, stack: Stack) -> Dict[str, Any]:
        """
        Refresh ``stack.stack_info`` from CloudFormation.

        Fills in whichever of name or ID was missing. Service errors are
        raised unchanged.
        """
        lookup = stack.stack_id or stack.stack_name
        if not lookup:
            raise MissingStackNameOrID()

        response = self.cloudformation.describe_stacks(StackName=lookup)
        info = response["Stacks"][0]
        stack.stack_info = info
        if not stack.stack_name:
            stack.stack_name = info["StackName"]
        if not stack.stack_id:
            stack.stack_id = info["StackId"]
        return info

    def list_events(self, stack: Stack, after: datetime = EPOCH) -> List[StackEvent]:
        """Get the stack's events newer than ``after``, oldest first."""
        return self.events.list_events(stack.stack_id, after)

    def get_last_event_time(self, stack: Stack) -> datetime:
        """Get the time of the stack's newest event."""
        return self.events.get_last_event_time(stack.stack_id)

    def _validate_template(self, template_args: Dict[str, str]) -> Dict[str, Any]:
        try:
            validation = self.cloudformation.validate_template(**template_args)
        except AWS_ERRORS as e:
            raise ValidationFailed(f"Failed to Validate Template: {error_message(e)}") from e

        # validate_template does not report CAPABILITY_AUTO_EXPAND
        capabilities = list(validation.get("Capabilities", []))
        if CAPABILITY_AUTO_EXPAND not in capabilities:
            capabilities.append(CAPABILITY_AUTO_EXPAND)
        validation["Capabilities"] = capabilities
        return validation

    def _resolve_parameters(self, stack: Stack, declared: List[Dict[str, Any]]) -> List[Dict[str, str]]:
        """Merge parameter documents and overrides, keeping only declared keys."""
        values = {p["ParameterKey"]: p["ParameterValue"] for p in parse_parameters(stack.parameter_bodies)}
        values.update(stack.parameter_overrides)

        declared_keys = [p["ParameterKey"] for p in declared]
        unused = sorted(set(values) - set(declared_keys))
        if unused:
            logger.debug(f"Ignoring parameters not declared by the template: {', '.join(unused)}")

        return [
            {"ParameterKey": key, "ParameterValue": values[key]}
            for key in declared_keys
            if key in values
        ]

    def _stack_name_from_metadata(self, template_args: Dict[str, str], parameters: List[Dict[str, str]]) -> str:
        """
        Derive a stack name from template metadata.

        Expected shape::

            Metadata:
              StackName:
                Environment:
                  staging: search-ui-staging
                  production: search-ui-production
        """
        try:
            summary = self.cloudformation.get_template_summary(**template_args)
        except AWS_ERRORS as e:
            raise RemoteCallFailed("template", f"Failed to get Template Summary: {error_message(e)}") from e

        raw = summary.get("Metadata")
        if not raw:
            return ""
        try:
            metadata = json.loads(raw)
        except ValueError:
            logger.warning("Template metadata is not valid JSON, cannot derive stack name")
            return ""

        names = metadata.get("StackName") if isinstance(metadata, dict) else None
        if not isinstance(names, dict):
            return ""

        values = {p["ParameterKey"]: p["ParameterValue"] for p in parameters}
        for key, branches in names.items():
            if key in values and isinstance(branches, dict) and branches.get(values[key]):
                logger.info(f"Using stack name from template metadata ({key}={values[key]})")
                return str(branches[values[key]])
        return ""

    def _resolve_role_arn(self, stack: Stack) -> Optional[str]:
        if not stack.cfn_role_name:
            return None
        try:
            return self.session.role_arn_from_name(stack.cfn_role_name)
        except AWS_ERRORS as e:
            raise RemoteCallFailed("role", f"Failed to resolve role {stack.cfn_role_name}: {error_message(e)}") from e

    def _apply_policy_after_create(self, policy_body: str, stack_id: str) -> PolicyResult:
        try:
            result = self.policies.apply_policy(policy_body, stack_id)
        except AWS_ERRORS as e:
            logger.error(f"Failed to set stack policy on {stack_id}: {e}")
            return PolicyResult(failures={stack_id: error_message(e)})
        return result

    def deploy(self, stack: Stack) -> DeployResult:
        """
        Create the stack, or update it if it already exists.

        The call only starts the operation; watching it to completion is
        up to the caller (see StackMonitor).

        Returns:
            DeployResult. ``no_updates`` is set when CloudFormation reports
            nothing to change. After a create with a stack policy,
            ``post_action`` applies the policy and should be run once the
            stack is complete.

        Raises:
            ValidationFailed: The template was rejected
            RemoteCallFailed: A service call failed; ``stage`` names the step
        """
        template_args = stack.template_args()
        validation = self._validate_template(template_args)
        capabilities = validation["Capabilities"]

        if stack.stack_policy_body:
            parse_policy(stack.stack_policy_body)

        parameters = self._resolve_parameters(stack, validation.get("Parameters", []))

        if not stack.stack_name and not stack.stack_id:
            stack.stack_name = self._stack_name_from_metadata(template_args, parameters)

        try:
            self.get_stack_info(stack)
        except ClientError as e:
            if classify_error(e) is not ErrorKind.STACK_NOT_FOUND:
                raise RemoteCallFailed("describe", f"Failed to describe stack: {error_message(e)}") from e
            logger.info(f"Stack {stack.stack_id or stack.stack_name} does not exist yet")
            stack.stack_info = None
        except BotoCoreError as e:
            raise RemoteCallFailed("describe", f"Failed to describe stack: {e}") from e

        if stack.tags_body:
            tags = parse_tags(stack.tags_body)
        elif stack.stack_info is not None:
            tags = stack.stack_info.get("Tags", [])
        else:
            tags = []

        role_arn = self._resolve_role_arn(stack)

        args: Dict[str, Any] = {
            **template_args,
            "Capabilities": capabilities,
            "Parameters": parameters,
            "Tags": tags,
        }
        if role_arn:
            args["RoleARN"] = role_arn

        if stack.stack_info is None:
            return self._create(stack, args)
        return self._update(stack, args)

    def _create(self, stack: Stack, args: Dict[str, Any]) -> DeployResult:
        logger.info(f"Creating stack {stack.stack_name}")
        try:
            response = self.cloudformation.create_stack(
                StackName=stack.stack_name,
                OnFailure="DELETE",
                EnableTerminationProtection=stack.termination_protection,
                **args,
            )
        except AWS_ERRORS as e:
            raise RemoteCallFailed("create", f"Failed to Create Stack: {error_message(e)}") from e

        stack.stack_id = response["StackId"]
        result = DeployResult(message=f"Creating stack {stack.stack_name}", created=True)
        if stack.stack_policy_body:
            result.post_action = functools.partial(
                self._apply_policy_after_create, stack.stack_policy_body, stack.stack_id
            )
        return result

    def _update(self, stack: Stack, args: Dict[str, Any]) -> DeployResult:
        # Termination protection is only ever switched on here
        if stack.termination_protection and not stack.stack_info.get("EnableTerminationProtection", False):
            try:
                self.cloudformation.update_termination_protection(
                    EnableTerminationProtection=True,
                    StackName=stack.stack_id,
                )
            except AWS_ERRORS as e:
                raise RemoteCallFailed(
                    "termination-protection",
                    f"Failed to Update Termination Protection: {error_message(e)}",
                ) from e
            logger.info(f"Enabled termination protection on {stack.stack_name}")

        if stack.stack_policy_body:
            try:
                policy_result = self.policies.apply_policy(stack.stack_policy_body, stack.stack_id)
            except AWS_ERRORS as e:
                raise RemoteCallFailed("policy", f"Failed to Set Stack Policy: {error_message(e)}") from e
            if stack.stack_id in policy_result.failures:
                raise RemoteCallFailed(
                    "policy", f"Failed to Set Stack Policy: {policy_result.failures[stack.stack_id]}"
                )

        logger.info(f"Updating stack {stack.stack_name}")
        try:
            self.cloudformation.update_stack(StackName=stack.stack_id, **args)
        except AWS_ERRORS as e:
            if classify_error(e) is ErrorKind.NO_UPDATES:
                return DeployResult(message=NO_UPDATES_MESSAGE, no_updates=True)
            raise RemoteCallFailed("update", f"Failed to Update Stack: {error_message(e)}") from e

        return DeployResult(message=f"Updating stack {stack.stack_name}")

    def destroy(self, stack: Stack) -> None:
        """
        Delete the stack by its ID.

        A name alone is not enough, so that a stack created under the same
        name after this one was looked up is never deleted by mistake.

        Raises:
            MissingStackID: The stack ID is not known
            RemoteCallFailed: The delete call failed
        """
        if not stack.stack_id:
            raise MissingStackID()

        role_arn = self._resolve_role_arn(stack)
        args: Dict[str, Any] = {"StackName": stack.stack_id}
        if role_arn:
            args["RoleARN"] = role_arn

        logger.info(f"Deleting stack {stack.stack_name or stack.stack_id}")
        try:
            self.cloudformation.delete_stack(**args)
        except AWS_ERRORS as e:
            raise RemoteCallFailed("delete", f"Failed to Delete Stack: {error_message(e)}") from e
