"""
Runtime configuration for forge.

Settings come from the environment and can be overridden by CLI options.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from cloudformation.errors import InvalidConfig

# One endpoint override variable per AWS sub-service; used to point the
# clients at a local emulator.
ENDPOINT_ENV_VARS = {
    "cloudformation": "AWS_ENDPOINT_CLOUDFORMATION",
    "iam": "AWS_ENDPOINT_IAM",
    "sts": "AWS_ENDPOINT_STS",
}


@dataclass
class ForgeConfig:
    """Configuration for a forge run."""

    # AWS session settings
    region: Optional[str] = None
    profile: Optional[str] = None

    # Client behaviour
    max_retries: int = 10
    endpoints: Dict[str, str] = field(default_factory=dict)

    # Role assumption
    assume_role_duration: int = 900
    mfa_assume_role_duration: int = 3600

    # Event polling period in seconds
    poll_interval: int = 10

    def endpoint_for(self, service: str) -> Optional[str]:
        """Get the endpoint override for a service, if any."""
        return self.endpoints.get(service)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return {k: v for k, v in self.__dict__.items() if not k.startswith("_")}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ForgeConfig":
        """Create config from dictionary."""
        return cls(**data)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "ForgeConfig":
        """
        Build a config from environment variables.

        Args:
            environ: Mapping to read instead of os.environ
            **overrides: Values that win over the environment; None is ignored

        Returns:
            The resolved configuration

        Raises:
            InvalidConfig: The polling period is not a positive integer
        """
        env = os.environ if environ is None else environ

        data: Dict[str, Any] = {
            "region": env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION"),
            "profile": env.get("AWS_PROFILE"),
            "endpoints": {
                service: env[var] for service, var in ENDPOINT_ENV_VARS.items() if env.get(var)
            },
        }

        polling = env.get("FORGE_EVENT_POLLING_PERIOD")
        if polling and overrides.get("poll_interval") is None:
            try:
                data["poll_interval"] = int(polling)
            except ValueError as e:
                raise InvalidConfig(
                    f"FORGE_EVENT_POLLING_PERIOD must be an integer, got {polling!r}"
                ) from e

        data.update({k: v for k, v in overrides.items() if v is not None})
        config = cls.from_dict(data)
        if config.poll_interval < 1:
            raise InvalidConfig(
                f"Event polling period must be at least 1 second, got {config.poll_interval}"
            )
        return config


# Singleton instance
_forge_config: Optional[ForgeConfig] = None


def get_forge_config(**overrides: Any) -> ForgeConfig:
    """Get or create the process configuration."""
    global _forge_config
    if _forge_config is None or overrides:
        _forge_config = ForgeConfig.from_env(**overrides)
    return _forge_config
