"""Pydantic models for aumai-notar."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    """Base for models whose JSON form uses camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-ready dict with camelCase keys and unset fields dropped."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class VerifyErrorCode(str, Enum):
    """Closed set of verification outcome codes."""

    no_signatures = "NO_SIGNATURES"
    malformed_signature = "MALFORMED_SIGNATURE"
    missing_key_id = "MISSING_KEY_ID"
    signature_mismatch = "SIGNATURE_MISMATCH"
    no_matching_signature = "NO_MATCHING_SIGNATURE"
    key_not_found = "KEY_NOT_FOUND"
    key_expired = "KEY_EXPIRED"
    key_revoked = "KEY_REVOKED"
    key_fetch_failed = "KEY_FETCH_FAILED"
    missing_manifest = "MISSING_MANIFEST"
    missing_file = "MISSING_FILE"
    hash_mismatch = "HASH_MISMATCH"
    invalid_front_matter = "INVALID_FRONT_MATTER"
    network_error = "NETWORK_ERROR"
    dns_resolution_failed = "DNS_RESOLUTION_FAILED"


class KeySource(str, Enum):
    """Channel a public key was discovered through."""

    https = "https"
    dns = "dns"


class SignatureEntry(_WireModel):
    """One signer's attestation over a canonical payload."""

    key_id: str = ""
    publisher: str
    value: str  # "ed25519:" + base64 signature


class PackageMetadata(_WireModel):
    """Caller-supplied metadata for signing an archive."""

    name: str
    description: str
    version: str
    author: str = ""
    key_id: str | None = None
    publisher: str | None = None


class PackageManifest(_WireModel):
    """Contents of ``MANIFEST.json`` inside a signed archive."""

    name: str
    description: str
    version: str
    author: str
    files: dict[str, str] = Field(default_factory=dict)
    signatures: list[SignatureEntry] | None = None


class PublicKeyEntry(_WireModel):
    """A key declared by a publisher in its well-known key manifest."""

    key_id: str
    algorithm: str = "ed25519"
    public_key: str  # Base-64 encoded raw 32-byte key
    expires: str  # ISO-8601
    revoked: bool = False

    def expires_at(self) -> datetime | None:
        """Parse :attr:`expires`; naive timestamps are taken as UTC.

        Returns ``None`` when the timestamp cannot be parsed.
        """
        try:
            parsed = datetime.fromisoformat(self.expires)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed


class KeyManifest(_WireModel):
    """Document served at ``/.well-known/notar-keys.json``."""

    keys: list[PublicKeyEntry] = Field(default_factory=list)


class DnsTxtKeyRecord(_WireModel):
    """Parsed ``v=sk1; k=ed25519; p=...; exp=...`` TXT record."""

    version: str
    algorithm: str
    public_key: str
    expires: int = Field(gt=0)


class ResolvedKey(_WireModel):
    """Outcome of resolving one publisher key through one or more channels.

    ``key`` may be set together with ``code`` when the key was found but is
    expired or revoked.
    """

    key: PublicKeyEntry | None = None
    code: VerifyErrorCode | None = None
    source: KeySource | None = None


class SignerResult(_WireModel):
    """Per-signature verification outcome."""

    key_id: str
    publisher: str
    valid: bool
    code: VerifyErrorCode | None = None
    reason: str | None = None
    key_source: KeySource | None = None
    key_expires: str | None = None


class FileIntegrityResult(_WireModel):
    """Per-file hash check outcome for archives."""

    path: str
    valid: bool
    code: VerifyErrorCode | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None


class VerifyDetails(_WireModel):
    """What was checked during a verification call."""

    name: Any = None
    description: Any = None
    version: Any = None
    author: Any = None
    signers: list[SignerResult] | None = None
    files: list[FileIntegrityResult] | None = None


class VerifyResult(_WireModel):
    """Outcome of verifying a document or archive."""

    valid: bool
    code: VerifyErrorCode | None = None
    reason: str | None = None
    details: VerifyDetails | None = None

    def to_json(self, indent: int | None = 2) -> str:
        """Serialise with camelCase keys, omitting unset fields."""
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=indent)


class KeyPair(BaseModel):
    """Raw Ed25519 key material (32 bytes each)."""

    public_key: bytes
    private_key: bytes


__all__ = [
    "DnsTxtKeyRecord",
    "FileIntegrityResult",
    "KeyManifest",
    "KeyPair",
    "KeySource",
    "PackageManifest",
    "PackageMetadata",
    "PublicKeyEntry",
    "ResolvedKey",
    "SignatureEntry",
    "SignerResult",
    "VerifyDetails",
    "VerifyErrorCode",
    "VerifyResult",
]
