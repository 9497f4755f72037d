"""Shared test fixtures for aumai-notar."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from aumai_notar.config import NotarSettings, VerifyOptions
from aumai_notar.core import KeyManager, Signer, b64encode, pack_files
from aumai_notar.models import KeyPair, PackageMetadata

NOW = datetime(2026, 1, 1, tzinfo=UTC)
FUTURE = "2030-01-01T00:00:00.000Z"
PAST = "2020-01-01T00:00:00.000Z"
PUBLISHER = "example.com"
KEY_ID = "key_2026"

SAMPLE_DOCUMENT = """---
name: code-review
description: Review pull requests for common mistakes
version: 1.0.0
author: example.com
---
# Code Review

Check every diff twice.
"""


# ---------------------------------------------------------------------------
# Publisher stub: key manifests and DNS-over-HTTPS answers
# ---------------------------------------------------------------------------


class PublisherStub:
    """In-memory stand-in for publisher web servers and the DoH resolver.

    Requests are routed through ``httpx.MockTransport``; every request is
    recorded in :attr:`requests`.
    """

    doh_host = "cloudflare-dns.com"

    def __init__(self) -> None:
        self.manifests: dict[str, Any] = {}
        self.txt_records: dict[str, list[str]] = {}
        self.unreachable: set[str] = set()
        self.dns_delay = 0.0
        self.dns_down = False
        self.doh_body: Any = None
        self.requests: list[httpx.Request] = []

    def publish(
        self,
        public_key: bytes,
        publisher: str = PUBLISHER,
        key_id: str = KEY_ID,
        expires: str = FUTURE,
        revoked: bool = False,
    ) -> None:
        """Append a key to *publisher*'s ``notar-keys.json``."""
        manifest = self.manifests.setdefault(publisher, {"keys": []})
        manifest["keys"].append(
            {
                "keyId": key_id,
                "algorithm": "ed25519",
                "publicKey": b64encode(public_key),
                "expires": expires,
                "revoked": revoked,
            }
        )

    def publish_txt(
        self,
        public_key: bytes,
        publisher: str = PUBLISHER,
        key_id: str = KEY_ID,
        expires: int = int(datetime(2030, 1, 1, tzinfo=UTC).timestamp()),
    ) -> None:
        name = f"notar.{key_id}.{publisher}"
        value = f"v=sk1; k=ed25519; p={b64encode(public_key)}; exp={expires}"
        self.txt_records.setdefault(name, []).append(value)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host

        if host == self.doh_host:
            if self.dns_delay:
                await asyncio.sleep(self.dns_delay)
            if self.dns_down:
                raise httpx.ConnectError("resolver unreachable", request=request)
            if self.doh_body is not None:
                return httpx.Response(200, json=self.doh_body)
            name = request.url.params["name"]
            values = self.txt_records.get(name)
            if not values:
                return httpx.Response(200, json={"Status": 3})
            answers = [
                {"name": name, "type": 16, "TTL": 300, "data": f'"{value}"'}
                for value in values
            ]
            return httpx.Response(200, json={"Status": 0, "Answer": answers})

        if host in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        body = self.manifests.get(host)
        if body is None:
            return httpx.Response(404)
        if isinstance(body, int):
            return httpx.Response(body)
        if isinstance(body, str):
            return httpx.Response(200, text=body)
        return httpx.Response(200, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def options(self, **overrides: Any) -> VerifyOptions:
        """VerifyOptions wired to this stub with the clock fixed at NOW."""
        values: dict[str, Any] = {"client": self.client(), "now": NOW}
        values.update(overrides)
        return VerifyOptions(**values)

    def urls(self) -> list[str]:
        return [str(r.url) for r in self.requests]


@pytest.fixture()
def stub() -> PublisherStub:
    return PublisherStub()


@pytest.fixture()
def fast_dns_settings() -> NotarSettings:
    """Settings with a DNS timeout short enough for tests."""
    return NotarSettings(dns_timeout=0.05)


# ---------------------------------------------------------------------------
# Key fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def key_manager() -> KeyManager:
    return KeyManager()


@pytest.fixture(scope="session")
def keypair(key_manager: KeyManager) -> KeyPair:
    return key_manager.generate_keypair()


@pytest.fixture(scope="session")
def other_keypair(key_manager: KeyManager) -> KeyPair:
    """A second, unrelated key pair."""
    return key_manager.generate_keypair()


# ---------------------------------------------------------------------------
# Document and archive fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_document() -> str:
    return SAMPLE_DOCUMENT


@pytest.fixture()
def signed_document(keypair: KeyPair) -> str:
    """SAMPLE_DOCUMENT signed by example.com with KEY_ID."""
    return Signer().sign_document(
        SAMPLE_DOCUMENT, keypair.private_key, key_id=KEY_ID, publisher=PUBLISHER
    )


@pytest.fixture()
def archive_files() -> dict[str, bytes]:
    return {
        "SKILL.md": b"# Code Review\n\nCheck every diff twice.\n",
        "scripts/lint.sh": b"#!/bin/sh\nruff check .\n",
        "assets/logo.png": bytes(range(64)),
    }


@pytest.fixture()
def archive(archive_files: dict[str, bytes]) -> bytes:
    return pack_files(archive_files)


@pytest.fixture()
def package_metadata() -> PackageMetadata:
    return PackageMetadata(
        name="code-review",
        description="Review pull requests for common mistakes",
        version="1.0.0",
        author=PUBLISHER,
        key_id=KEY_ID,
    )


@pytest.fixture()
def signed_archive(
    archive: bytes, package_metadata: PackageMetadata, keypair: KeyPair
) -> bytes:
    return Signer().sign_archive(archive, package_metadata, keypair.private_key)
