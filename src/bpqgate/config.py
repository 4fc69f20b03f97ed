"""Configuration management for the BPQ gateway using Pydantic Settings."""

import codecs
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="BPQGATE_",
        extra="ignore",
        frozen=True,
    )

    # Local listener (node controller side)
    listen_host: str = Field(default="0.0.0.0", description="Local bind address")
    listen_port: int = Field(default=12345, ge=0, le=65535, description="Local listening port")

    # Upstream BBS
    remote_host: str = Field(default="bbs.retrocampus.com", description="BBS hostname")
    remote_port: int = Field(default=23, ge=1, le=65535, description="BBS Telnet port")
    connect_timeout: float | None = Field(
        default=30.0, gt=0, description="Seconds to wait for the BBS, None to wait forever"
    )

    # Charset pair
    local_encoding: str = Field(default="utf-8", description="Charset of the node link")
    remote_encoding: str = Field(default="cp437", description="Charset of the BBS link")
    local_newline: str = Field(default="\r\n", description="Terminator for gateway status lines")

    # Relay behavior
    exit_command: str = Field(default="exit", description="Line that ends a session")
    poll_interval: float = Field(
        default=0.05, gt=0, description="Seconds of BBS silence before output is flushed"
    )
    flush_threshold: int = Field(
        default=4096, ge=1, description="Buffered characters that force a flush"
    )
    idle_timeout: float | None = Field(
        default=None, gt=0, description="Close sessions idle this many seconds, None to disable"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["console", "json"] = Field(
        default="console", description="Log format (console or json)"
    )

    @field_validator("local_encoding", "remote_encoding")
    @classmethod
    def _check_encoding(cls, value: str) -> str:
        try:
            codecs.lookup(value)
        except LookupError as e:
            raise ValueError(f"unknown encoding: {value}") from e
        return value

    @field_validator("exit_command")
    @classmethod
    def _check_exit_command(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("exit command must not be blank")
        return value

    @property
    def charsets(self) -> tuple[str, str]:
        """The (local, remote) encoding pair."""
        return self.local_encoding, self.remote_encoding


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
