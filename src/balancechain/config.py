"""
Central configuration for BalanceChain.

This module provides a single, typed configuration object that reads from
environment variables (12-factor style) using pydantic-settings.

Usage:

    from balancechain.config import get_settings

    settings = get_settings()
    limit = settings.sync.pull_limit
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_csv(v):
    if isinstance(v, str):
        return [x.strip() for x in v.split(",") if x.strip()]
    return v


class ChainSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BALANCECHAIN_CHAIN_")

    nonce_bytes: int = Field(
        default=16,
        ge=8,
        description="Random bytes per entry nonce (hex-encoded on the wire).",
    )
    db_path: Optional[str] = Field(
        default=None,
        description="SQLite file for the local log. In-memory storage when unset.",
    )


class SignalingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BALANCECHAIN_SIGNAL_")

    urls: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Comma-separated relay URLs, tried in rotation.",
    )
    backoff_initial_ms: int = Field(default=250, gt=0)
    backoff_max_ms: int = Field(default=8000, gt=0)
    backoff_factor: float = Field(default=1.8, gt=1.0)
    max_broadcast: int = Field(
        default=50,
        gt=0,
        description="Upper bound on distinct recipients per broadcast.",
    )

    @field_validator("urls", mode="before")
    @classmethod
    def _parse_urls(cls, v):
        return _split_csv(v)


class SyncSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BALANCECHAIN_SYNC_")

    pull_limit: int = Field(
        default=200,
        gt=0,
        description="Maximum outbox items returned for a single pull.",
    )
    connect_timeout_s: float = Field(default=5.0, gt=0)
    bind_host: str = Field(
        default="127.0.0.1",
        description="Interface the peer transport listens on when dialing.",
    )
    advertise_hosts: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Extra host candidates to advertise (e.g. a LAN address).",
    )
    presence_ttl_s: int = Field(default=120, gt=0)

    @field_validator("advertise_hosts", mode="before")
    @classmethod
    def _parse_hosts(cls, v):
        return _split_csv(v)


class RelaySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BALANCECHAIN_RELAY_")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8787)
    path: str = Field(default="/signal")


class RuntimeSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BALANCECHAIN_")

    log_level: str = Field(
        default="INFO",
        description="Root log level (DEBUG/INFO/WARNING/ERROR).",
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        v = (v or "INFO").upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            return "INFO"
        return v


class BalanceChainSettings(BaseSettings):
    """
    Root configuration object.

    Aggregates:
      - chain
      - signaling
      - sync
      - relay
      - runtime
    """

    chain: ChainSettings = Field(default_factory=ChainSettings)
    signaling: SignalingSettings = Field(default_factory=SignalingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    relay: RelaySettings = Field(default_factory=RelaySettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)


@lru_cache(maxsize=1)
def get_settings() -> BalanceChainSettings:
    """Cached accessor for BalanceChainSettings."""
    return BalanceChainSettings()
