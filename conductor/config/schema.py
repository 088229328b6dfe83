from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from conductor.constants import RECONNECT_INITIAL_DELAY, RECONNECT_MAX_ATTEMPTS, RECONNECT_MAX_DELAY


class ReconnectConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_attempts: int = Field(default=RECONNECT_MAX_ATTEMPTS, ge=0)
    initial_delay: float = Field(default=RECONNECT_INITIAL_DELAY, gt=0)
    max_delay: float = Field(default=RECONNECT_MAX_DELAY, gt=0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "ReconnectConfig":
        if self.max_delay < self.initial_delay:
            raise ValueError("'max_delay' must be >= 'initial_delay'")
        return self


class ClientConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    # Base URL of the built-in default endpoint.
    origin: str = "http://localhost:8080"
    api_prefix: str = "/api"
    state_dir: str = "~/.conductor"
    request_timeout: float = Field(default=5.0, gt=0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    reconnect: ReconnectConfig = ReconnectConfig()

    @field_validator("origin")
    @classmethod
    def validate_origin(cls, v: str) -> str:
        """Require an absolute http(s) origin without trailing slash."""
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid origin: {v}. Expected an http:// or https:// URL")
        return v

    @field_validator("api_prefix")
    @classmethod
    def normalize_api_prefix(cls, v: str) -> str:
        v = v.strip().strip("/")
        return f"/{v}" if v else ""

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v
