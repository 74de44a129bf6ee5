import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigError

DEFAULT_PORT = 3001
DEFAULT_ORIGIN = "http://localhost:5173"
DEFAULT_JSON_BODY_LIMIT = 100 * 1024 * 1024

# Environment variable -> Settings field
ENV_VARS = {
    "HOST": "host",
    "PORT": "port",
    "FRONTEND_URL": "allowed_origin",
    "LOG_LEVEL": "log_level",
    "JSON_BODY_LIMIT": "json_body_limit",
    "MAX_CONCURRENT_SESSIONS": "max_concurrent_sessions",
    "GRACEFUL_SHUTDOWN_TIMEOUT": "graceful_shutdown_timeout",
}


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(DEFAULT_PORT, ge=0, le=65535)
    allowed_origin: str = DEFAULT_ORIGIN
    log_level: str = "info"
    json_body_limit: int = Field(DEFAULT_JSON_BODY_LIMIT, gt=0)
    max_concurrent_sessions: Optional[int] = Field(None, gt=0)
    graceful_shutdown_timeout: Optional[float] = Field(None, ge=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        """Build settings from environment variables, then apply overrides.

        Empty variables are treated as unset. Overrides whose value is None are
        ignored so CLI flags that were not given fall through to the
        environment.
        """
        if environ is None:
            environ = os.environ

        values = {}
        for env_name, field_name in ENV_VARS.items():
            raw = environ.get(env_name)
            if raw is not None and raw.strip() != "":
                values[field_name] = raw.strip()

        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
