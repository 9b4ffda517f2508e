"""
Error types raised by the stack lifecycle engine, and classification of
CloudFormation/STS/IAM service errors.
"""

import re
from enum import Enum
from typing import Optional

from botocore.exceptions import ClientError

NO_UPDATES_MESSAGE = "No updates are to be performed."

_STACK_NOT_FOUND_RE = re.compile(r"^Stack with id .+ does not exist$")


class ErrorKind(Enum):
    """Closed set of service error conditions the engine reacts to."""

    EXPIRED_TOKEN = "expired_token"
    STACK_NOT_FOUND = "stack_not_found"
    NO_UPDATES = "no_updates"
    ACCESS_DENIED = "access_denied"
    OTHER = "other"


def error_code(err: BaseException) -> Optional[str]:
    """Return the service error code of a ClientError, or None."""
    if isinstance(err, ClientError):
        return err.response.get("Error", {}).get("Code")
    return None


def error_message(err: BaseException) -> str:
    """Return the service error message of a ClientError, or str(err)."""
    if isinstance(err, ClientError):
        return str(err.response.get("Error", {}).get("Message", ""))
    return str(err)


def classify_error(err: BaseException) -> ErrorKind:
    """Map a raised exception to the ErrorKind the engine handles.

    "No updates" is matched on the literal message text, since
    CloudFormation reports it as a generic ValidationError.
    """
    if not isinstance(err, ClientError):
        return ErrorKind.OTHER

    code = error_code(err)
    message = error_message(err)

    if code == "ExpiredToken":
        return ErrorKind.EXPIRED_TOKEN
    if message == NO_UPDATES_MESSAGE:
        return ErrorKind.NO_UPDATES
    if _STACK_NOT_FOUND_RE.match(message):
        return ErrorKind.STACK_NOT_FOUND
    if code in ("AccessDenied", "AccessDeniedException"):
        return ErrorKind.ACCESS_DENIED
    return ErrorKind.OTHER


class ForgeError(Exception):
    """Base class for all errors raised by forge."""


class InvalidValue(ForgeError):
    """A value cannot be encoded for CloudFormation (e.g. a comma in a list item)."""


class UnsupportedType(ForgeError):
    """A decoded value has a type that cannot be encoded."""


class InvalidFormat(ForgeError):
    """A parameter, tag or policy document has the wrong shape."""


class MissingEnvVar(ForgeError):
    """A template referenced an environment variable that is not set."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f'Environment variable by the name "{name}" is not defined')


class InvalidConfig(ForgeError):
    """A runtime setting from the environment is out of range or malformed."""


class ValidationFailed(ForgeError):
    """The template or its inputs were rejected."""


class MissingStackID(ForgeError):
    """An operation requires the stack ID to be known."""

    def __init__(self, message: str = "StackID must be defined. Hint: call get_stack_info() first"):
        super().__init__(message)


class MissingStackNameOrID(ForgeError):
    """Neither a stack name nor a stack ID is available."""

    def __init__(self, message: str = "StackName or StackID must be defined"):
        super().__init__(message)


class AssumeRoleFailed(ForgeError):
    """Temporary credentials could not be obtained for a role."""


class MFADeviceNotFound(ForgeError):
    """The caller has no MFA device to assume a role with."""

    def __init__(self, message: str = "MFA device not found for the current user"):
        super().__init__(message)


class AccessDenied(ForgeError):
    """The caller is not allowed to perform a prerequisite lookup."""


class RemoteCallFailed(ForgeError):
    """A service call failed during a named stage of deploy/destroy."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(message)


class StackDeployFailed(ForgeError):
    """The stack reached a terminal status other than the expected one."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Stack deploy failed! Stack Status: {status}")
