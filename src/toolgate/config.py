"""
Runtime configuration for Toolgate.

Loaded from YAML the same way policy documents are:

    default_verdict_for_unconfigured_tools: deny
    confirmation_timeout_seconds: 120
    provider_timeout_seconds: 30
    db_path: /var/lib/toolgate/toolgate.db
    log_level: INFO

Every key is optional; unknown keys are rejected.
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from toolgate.schema import DefaultVerdict

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class GateConfig(BaseModel):
    """
    Toolgate settings.

    Attributes:
        default_verdict_for_unconfigured_tools: Verdict when no rule matched
        confirmation_timeout_seconds: How long a held invocation waits for
            a human before it is denied
        max_rules_per_policy: Upper bound on rules held by one policy
        provider_timeout_seconds: Bound on one forwarded call
        db_path: SQLite database holding policies and history
        log_level: Level of the "toolgate" logger
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    default_verdict_for_unconfigured_tools: DefaultVerdict = DefaultVerdict.ALLOW
    confirmation_timeout_seconds: float = Field(default=300, gt=0)
    max_rules_per_policy: int = Field(default=200, gt=0)
    provider_timeout_seconds: float = Field(default=60, gt=0)
    db_path: str = "toolgate.db"
    log_level: str = "WARNING"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            msg = f"log_level must be one of {', '.join(_LOG_LEVELS)}"
            raise ValueError(msg)
        return level


def load_config(path: Path | str) -> GateConfig:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return GateConfig.model_validate(data or {})


def load_config_from_string(content: str) -> GateConfig:
    """Load configuration from a YAML string."""
    data = yaml.safe_load(content)
    return GateConfig.model_validate(data or {})
