"""
Applying a stack policy to a stack and all of its nested stacks.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

import jsonschema
from botocore.exceptions import BotoCoreError, ClientError

from .errors import InvalidFormat, error_message

logger = logging.getLogger(__name__)

NESTED_STACK_TYPE = "AWS::CloudFormation::Stack"

_RESOURCE_REF = {
    "oneOf": [
        {"type": "string"},
        {"type": "array", "items": {"type": "string"}},
    ]
}

POLICY_SCHEMA = {
    "type": "object",
    "required": ["Statement"],
    "properties": {
        "Statement": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "Resource": _RESOURCE_REF,
                    "NotResource": _RESOURCE_REF,
                },
            },
        }
    },
}


def wildcard_match(pattern: str, name: str) -> bool:
    """Match ``name`` against a pattern where ``*`` is any run and ``?`` any one character."""
    regex = "".join(
        ".*" if ch == "*" else "." if ch == "?" else re.escape(ch) for ch in pattern
    )
    return re.fullmatch(regex, name, re.DOTALL) is not None


def parse_policy(policy_body: str) -> Dict[str, Any]:
    """Decode and validate a stack policy document."""
    try:
        policy = json.loads(policy_body)
    except json.JSONDecodeError as e:
        raise InvalidFormat(f"Stack policy is not valid JSON: {e}") from e

    try:
        jsonschema.validate(policy, POLICY_SCHEMA)
    except jsonschema.ValidationError as e:
        raise InvalidFormat(f"Invalid stack policy: {e.message}") from e
    return policy


def _statement_patterns(statement: Dict[str, Any]) -> List[str]:
    refs = statement.get("Resource") or statement.get("NotResource")
    if refs is None:
        return []
    if isinstance(refs, str):
        refs = [refs]
    return [ref.split("/")[-1] for ref in refs]


def filter_policy(policy: Dict[str, Any], logical_ids: List[str]) -> Dict[str, Any]:
    """
    Keep only the statements that refer to a resource of this stack.

    A statement without Resource/NotResource is kept as is.

    Args:
        policy: Parsed policy document
        logical_ids: Logical IDs of the stack's direct resources

    Returns:
        A copy of the policy with the filtered statement list
    """
    statements = []
    for statement in policy["Statement"]:
        patterns = _statement_patterns(statement)
        if not patterns or any(
            wildcard_match(pattern, logical_id)
            for pattern in patterns
            for logical_id in logical_ids
        ):
            statements.append(statement)
    return {**policy, "Statement": statements}


@dataclass
class PolicyResult:
    """Outcome of applying a policy across a stack tree."""

    applied: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """Check if the policy was set on every stack."""
        return not self.failures


class StackPolicyPropagator:
    """Set a stack policy on a stack and, recursively, its nested stacks."""

    def __init__(self, session):
        self.session = session

    def apply_policy(self, policy_body: str, stack_id: str) -> PolicyResult:
        """
        Apply ``policy_body`` to ``stack_id`` and every nested stack below it.

        Each stack receives only the statements matching its own resources.
        Failures on individual stacks are recorded in the result and do not
        stop propagation; only failing to list the top stack's resources is
        raised.

        Raises:
            InvalidFormat: The policy document is malformed
            ClientError: The top stack's resources could not be listed
        """
        policy = parse_policy(policy_body)
        result = PolicyResult()
        self._apply(policy, stack_id, result, top_level=True)
        return result

    def _apply(self, policy: Dict[str, Any], stack_id: str, result: PolicyResult, top_level: bool = False) -> None:
        try:
            response = self.session.cloudformation.describe_stack_resources(StackName=stack_id)
        except (ClientError, BotoCoreError) as e:
            if top_level:
                raise
            logger.error(f"Failed to list resources of nested stack {stack_id}: {e}")
            result.failures[stack_id] = error_message(e)
            return

        resources = response.get("StackResources", [])
        logical_ids = [r["LogicalResourceId"] for r in resources]
        nested_stacks = [
            r["PhysicalResourceId"]
            for r in resources
            if r["ResourceType"] == NESTED_STACK_TYPE and r.get("PhysicalResourceId")
        ]

        filtered = filter_policy(policy, logical_ids)
        logger.debug(
            f"Setting stack policy on {stack_id} with "
            f"{len(filtered['Statement'])}/{len(policy['Statement'])} statements"
        )
        try:
            self.session.cloudformation.set_stack_policy(
                StackName=stack_id,
                StackPolicyBody=json.dumps(filtered),
            )
            result.applied.append(stack_id)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to set stack policy on {stack_id}: {e}")
            result.failures[stack_id] = error_message(e)

        for nested_stack_id in nested_stacks:
            self._apply(policy, nested_stack_id, result)
