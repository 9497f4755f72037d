"""Runtime configuration for aumai-notar.

Settings are environment-driven and read once; per-call collaborators (the
HTTP client and the verification instant) travel in :class:`VerifyOptions`.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_DOH_ENDPOINT = "https://cloudflare-dns.com/dns-query"


class NotarSettings(BaseModel):
    """Network and discovery settings."""

    model_config = ConfigDict(frozen=True)

    doh_endpoint: str = Field(
        DEFAULT_DOH_ENDPOINT,
        description="DNS-over-HTTPS JSON resolver used for TXT key records",
    )
    dns_timeout: float = Field(
        5.0,
        gt=0,
        description="Seconds before an in-flight DNS query is aborted",
    )
    http_timeout: float = Field(
        10.0,
        gt=0,
        description="Timeout for the well-known key manifest request",
    )
    resolve_txt: bool = Field(
        True,
        description="Race DNS TXT records against the HTTPS key manifest",
    )

    @field_validator("doh_endpoint")
    @classmethod
    def validate_doh_endpoint(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError(f"doh_endpoint must be an http(s) URL, got '{v}'")
        return v

    @classmethod
    def from_env(cls) -> NotarSettings:
        """Load settings from ``NOTAR_*`` environment variables."""

        def env_bool(name: str, default: bool) -> bool:
            raw = os.getenv(name)
            if raw is None:
                return default
            return raw.lower() in {"1", "true", "yes", "on"}

        return cls(
            doh_endpoint=os.getenv("NOTAR_DOH_ENDPOINT", DEFAULT_DOH_ENDPOINT),
            dns_timeout=float(os.getenv("NOTAR_DNS_TIMEOUT", "5.0")),
            http_timeout=float(os.getenv("NOTAR_HTTP_TIMEOUT", "10.0")),
            resolve_txt=env_bool("NOTAR_RESOLVE_TXT", True),
        )


class VerifyOptions(BaseModel):
    """Collaborators injected into key resolution and verification.

    Args:
        client: Async HTTP client used for every fetch.  When ``None`` a
            short-lived client is opened for the duration of the call.
        now: The verification instant.  ``None`` means the wall clock at the
            moment :meth:`current_time` is called.
        resolve_txt: Overrides :attr:`NotarSettings.resolve_txt` when set.
        settings: Resolver endpoints and timeouts.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    client: httpx.AsyncClient | None = None
    now: datetime | None = None
    resolve_txt: bool | None = None
    settings: NotarSettings = Field(default_factory=NotarSettings)

    def current_time(self) -> datetime:
        if self.now is None:
            return datetime.now(tz=UTC)
        if self.now.tzinfo is None:
            return self.now.replace(tzinfo=UTC)
        return self.now

    @property
    def dns_enabled(self) -> bool:
        if self.resolve_txt is None:
            return self.settings.resolve_txt
        return self.resolve_txt


__all__ = ["DEFAULT_DOH_ENDPOINT", "NotarSettings", "VerifyOptions"]
