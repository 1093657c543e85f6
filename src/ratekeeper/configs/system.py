from datetime import timedelta

from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Connection to the shared Redis instance."""

    uri: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URI",
    )
    socket_timeout: timedelta | None = Field(
        default=timedelta(seconds=5),
        description="Per-command socket timeout; None waits forever",
    )


class LimiterConfig(BaseModel):
    """Key layout and startup behaviour of the limiter."""

    rate_key_prefix: str = Field(
        default="rate:", description="Prefix of rate-limit bucket keys"
    )
    concurrency_key_prefix: str = Field(
        default="concurrency:", description="Prefix of concurrency slot hashes"
    )
    load_scripts_on_start: bool = Field(
        default=True,
        description="Load the Lua scripts when the limiter is built instead "
        "of on first use",
    )


class LoggingConfig(BaseModel):
    """Root logger output settings."""

    level: str = Field(default="INFO", description="Root log level")
    json_output: bool = Field(
        default=True, description="Emit JSON lines instead of plain text"
    )
    configure_root: bool = Field(
        default=False,
        description="Let build_limiter install these settings on the root "
        "logger; leave off when the host application configures logging",
    )
