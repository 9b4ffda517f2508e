"""
Credential session management: role assumption, MFA, and recovery from
expired credentials during long-running operations.
"""

import logging
from typing import Any, Callable, Dict, Optional, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from cloudformation.errors import (
    AccessDenied,
    AssumeRoleFailed,
    ErrorKind,
    MFADeviceNotFound,
    classify_error,
)
from config import ForgeConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CredentialSession:
    """
    Owns the AWS session used by every forge component.

    The session created at construction is kept as ``original``. Assuming a
    role replaces ``active`` and drops every cached client, so the next
    client lookup picks up the new credentials. Components must look up
    their clients through this object on every call rather than holding
    on to them.
    """

    SERVICES = ("cloudformation", "iam", "sts")

    def __init__(self, config: Optional[ForgeConfig] = None, session: Optional[boto3.Session] = None):
        """
        Initialize the credential session.

        Args:
            config: Runtime configuration (read from the environment if not provided)
            session: Pre-built boto3 session to use as the original session
        """
        self.config = config or ForgeConfig.from_env()
        self.original = session or self._create_session()
        self.active = self.original
        self.assumed_role_arn: Optional[str] = None
        self._clients: Dict[str, Any] = {}

    def _create_session(self) -> boto3.Session:
        """Create the ambient AWS session."""
        session_args = {}
        if self.config.region:
            session_args["region_name"] = self.config.region
        if self.config.profile:
            session_args["profile_name"] = self.config.profile
        return boto3.Session(**session_args)

    def _session_from_credentials(self, credentials: Dict[str, Any]) -> boto3.Session:
        """Build a session from AssumeRole credentials."""
        return boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self.original.region_name,
        )

    def _set_active(self, session: boto3.Session) -> None:
        self.active = session
        self._clients = {}

    def _get_client(self, service: str) -> Any:
        """Get or create the client for a service on the active session."""
        if service not in self._clients:
            client_args: Dict[str, Any] = {
                "config": Config(retries={"max_attempts": self.config.max_retries}),
            }
            endpoint = self.config.endpoint_for(service)
            if endpoint:
                logger.debug(f"Using endpoint {endpoint} for {service}")
                client_args["endpoint_url"] = endpoint
            self._clients[service] = self.active.client(service, **client_args)
        return self._clients[service]

    @property
    def cloudformation(self):
        """Get CloudFormation client."""
        return self._get_client("cloudformation")

    @property
    def iam(self):
        """Get IAM client."""
        return self._get_client("iam")

    @property
    def sts(self):
        """Get STS client."""
        return self._get_client("sts")

    def _role_session_name(self) -> str:
        """Use the last path segment of the caller's ARN as the session name."""
        identity = self.sts.get_caller_identity()
        return identity["Arn"].split("/")[-1]

    def _mfa_serial(self) -> str:
        """Find the serial of the caller's first MFA device."""
        try:
            response = self.iam.list_mfa_devices()
        except ClientError as e:
            if classify_error(e) is ErrorKind.ACCESS_DENIED:
                raise AccessDenied(
                    "Access Denied to list available MFA devices. Please specify an MFA serial manually"
                ) from e
            raise

        devices = response.get("MFADevices", [])
        if not devices:
            raise MFADeviceNotFound()
        return devices[0]["SerialNumber"]

    def _assume(self, role_arn: str, duration: int, **mfa_args: str) -> None:
        try:
            session_name = self._role_session_name()
            response = self.sts.assume_role(
                RoleArn=role_arn,
                RoleSessionName=session_name,
                DurationSeconds=duration,
                **mfa_args,
            )
        except (ClientError, BotoCoreError) as e:
            raise AssumeRoleFailed(f"Failed to assume role {role_arn}: {e}") from e

        self._set_active(self._session_from_credentials(response["Credentials"]))
        self.assumed_role_arn = role_arn
        logger.info(f"Assumed role {role_arn} as session {session_name}")

    def assume_role(self, role_arn: str) -> None:
        """Switch every client to temporary credentials for a role."""
        self._assume(role_arn, self.config.assume_role_duration)

    def assume_role_with_mfa(self, role_arn: str, mfa_token: str, mfa_serial: str = "") -> None:
        """
        Assume a role using an MFA token.

        Args:
            role_arn: ARN of the role to assume
            mfa_token: Current code from the MFA device
            mfa_serial: Device serial; found automatically when blank

        Raises:
            MFADeviceNotFound: No serial given and the caller has no device
            AccessDenied: No serial given and the caller cannot list devices
            AssumeRoleFailed: STS refused the request
        """
        if not mfa_serial:
            mfa_serial = self._mfa_serial()
        self._assume(
            role_arn,
            self.config.mfa_assume_role_duration,
            SerialNumber=mfa_serial,
            TokenCode=mfa_token,
        )

    def unassume_all(self) -> None:
        """Go back to the original credentials."""
        self._set_active(self.original)
        self.assumed_role_arn = None

    def rotate_on_expiry(self, err: Exception) -> None:
        """
        Renew an assumed role after its credentials expired.

        Returns normally when the caller should retry the failed call. Any
        error other than an expired token, or a failure to assume the role
        again, re-raises ``err`` unchanged.
        """
        role_arn = self.assumed_role_arn
        if classify_error(err) is not ErrorKind.EXPIRED_TOKEN or not role_arn:
            raise err

        logger.warning(f"Credentials for {role_arn} expired, assuming role again")
        self.unassume_all()
        try:
            self.assume_role(role_arn)
        except AssumeRoleFailed as e:
            logger.error(f"Could not assume {role_arn} again: {e}")
            raise err from None

    def call_with_rotation(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``func``, rotating credentials and retrying while they are expired."""
        while True:
            try:
                return func(*args, **kwargs)
            except ClientError as e:
                self.rotate_on_expiry(e)

    def role_arn_from_name(self, role_name: str) -> str:
        """Build a role ARN in the caller's own account."""
        identity = self.sts.get_caller_identity()
        partition = "aws"
        caller_arn = identity.get("Arn", "")
        if caller_arn.startswith("arn:"):
            partition = caller_arn.split(":")[1]
        return f"arn:{partition}:iam::{identity['Account']}:role/{role_name}"
