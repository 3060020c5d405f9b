"""
Operator configuration.

Settings come from ``JOBSET_*`` environment variables so the same image can be
tuned per deployment without rebuilding.

The admission webhooks are only served when ``JOBSET_WEBHOOK_PORT`` is set.
With the default port of 0 the operator still defaults specs as it reconciles,
but nothing rejects invalid creates or immutable-field updates; production
deployments must set the port along with the TLS cert and key files.
"""

import os
from typing import Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

# Pod template fields an operator may reshape while a JobSet is suspended.
DEFAULT_SUSPENDED_MUTABLE_POD_FIELDS = ("nodeSelector", "tolerations", "affinity", "schedulingGates")

ENV_PREFIX = "JOBSET_"


class ConfigError(Exception):
    """Configuration validation error."""
    pass


class OperatorConfig(BaseModel):
    """Runtime settings for the controller and admission webhook."""

    workers: int = Field(default=4, gt=0)
    resync_interval: float = Field(default=30.0, gt=0)
    backoff_base: float = Field(default=1.0, gt=0)
    backoff_max: float = Field(default=300.0, gt=0)
    log_level: str = "INFO"
    webhook_host: str = "0.0.0.0"
    webhook_port: int = Field(default=0, ge=0)
    webhook_certfile: Optional[str] = None
    webhook_keyfile: Optional[str] = None
    suspended_mutable_pod_fields: Tuple[str, ...] = DEFAULT_SUSPENDED_MUTABLE_POD_FIELDS

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value):
        return value.upper()

    @field_validator("suspended_mutable_pod_fields", mode="before")
    @classmethod
    def _split_fields(cls, value):
        if isinstance(value, str):
            return tuple(field.strip() for field in value.split(",") if field.strip())
        return value

    @classmethod
    def from_env(cls, environ=None) -> "OperatorConfig":
        """Build a config from ``JOBSET_*`` variables, defaulting the rest."""
        environ = os.environ if environ is None else environ
        values = {}
        for field_name in cls.model_fields:
            key = ENV_PREFIX + field_name.upper()
            if key in environ:
                values[field_name] = environ[key]
        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(f"Invalid operator configuration: {e}") from e
