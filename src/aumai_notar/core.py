"""Canonical payloads, manifests, key handling and signing for aumai-notar."""

from __future__ import annotations

import base64
import hashlib
import io
import json
import logging
import re
import zipfile
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from aumai_notar import frontmatter
from aumai_notar.models import (
    KeyManifest,
    KeyPair,
    PackageManifest,
    PackageMetadata,
    PublicKeyEntry,
    SignatureEntry,
)

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "ed25519:"
MANIFEST_NAME = "MANIFEST.json"
LEGACY_SIGNATURE_NAME = "SIGNATURE"
REQUIRED_FIELDS = ("name", "description", "version")
DNS_LABEL = "notar"

_EXCLUDED_FROM_MANIFEST = frozenset({MANIFEST_NAME})
_B64_NOISE_RE = re.compile(r"[\s=]")
# Fixed timestamp so repacked archives do not depend on the wall clock.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class NotarError(Exception):
    """Base class for aumai-notar failures raised to callers."""


class FrontMatterError(NotarError):
    """A document lacks the metadata required for signing or verification."""


class SigningError(NotarError):
    """Signing could not be completed."""


class KeyFetchError(NotarError):
    """The publisher's key manifest answered with a non-success status."""


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """Decode base64, tolerating whitespace and missing or extra padding."""
    clean = _B64_NOISE_RE.sub("", text)
    return base64.b64decode(clean + "=" * (-len(clean) % 4), validate=True)


def sha256_digest(data: bytes) -> str:
    """Return ``"sha256:" + hex`` for *data*."""
    return "sha256:" + hashlib.sha256(data).hexdigest()


def _js_compatible(value: Any) -> Any:
    # Integral floats render without a fraction, as JSON.stringify does.
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _js_compatible(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_js_compatible(v) for v in value]
    return value


def compact_json(obj: Any) -> str:
    return json.dumps(_js_compatible(obj), separators=(",", ":"), ensure_ascii=False)


def canonical_json(obj: Mapping[str, Any]) -> str:
    """Top-level keys sorted, two-space indentation.

    The exact bytes are part of the signed contract for archive manifests.
    """
    ordered = {key: obj[key] for key in sorted(obj)}
    return json.dumps(_js_compatible(ordered), indent=2, ensure_ascii=False)


def scope_payload(base_payload: str, publisher: str) -> bytes:
    """Prefix *base_payload* with *publisher* so signatures cannot be replayed
    under another publisher identity."""
    return (publisher + "\n" + base_payload).encode("utf-8")


def verify_ed25519(signature: bytes, payload: bytes, public_key: bytes) -> bool:
    """Return True when *signature* over *payload* verifies under *public_key*."""
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, payload)
    except (InvalidSignature, ValueError):
        return False
    return True


def _load_signing_key(private_key: bytes) -> Ed25519PrivateKey:
    try:
        return Ed25519PrivateKey.from_private_bytes(private_key)
    except ValueError as exc:
        raise SigningError("Ed25519 private key must be 32 raw bytes") from exc


def _sign(payload: bytes, private_key: bytes) -> str:
    signature = _load_signing_key(private_key).sign(payload)
    return SIGNATURE_PREFIX + b64encode(signature)


def _merge_signatures(
    existing: list[SignatureEntry], entry: SignatureEntry
) -> list[SignatureEntry]:
    """Drop any prior entry for the same (keyId, publisher), then append *entry*."""
    kept = [
        sig
        for sig in existing
        if not (sig.key_id == entry.key_id and sig.publisher == entry.publisher)
    ]
    return [*kept, entry]


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def parse_document(raw: str) -> tuple[dict[str, Any], str]:
    """Parse front matter and require ``name``, ``description`` and ``version``.

    Raises:
        FrontMatterError: if any required field is missing or empty.
    """
    fields, body = frontmatter.parse(raw)
    missing = [name for name in REQUIRED_FIELDS if not fields.get(name)]
    if missing:
        raise FrontMatterError(
            "File must have name, description, and version in front matter "
            f"(missing: {', '.join(missing)})"
        )
    return fields, body


def document_base_payload(fields: Mapping[str, Any], body: str) -> str:
    """Sorted field JSON (signatures excluded) and the trimmed body."""
    signable = {key: fields[key] for key in sorted(fields) if key != "signatures"}
    return compact_json(signable) + "\n" + body.strip()


def build_signable_payload(raw: str, publisher: str) -> str:
    """The exact text signed for *raw* on behalf of *publisher*."""
    fields, body = parse_document(raw)
    return publisher + "\n" + document_base_payload(fields, body)


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------


def extract_files(archive: bytes) -> dict[str, bytes]:
    """Read every entry of a zip archive.

    Directory entries (names ending in ``/``) are kept with empty content, so
    they are hashed into manifests and survive a repack.

    Raises:
        zipfile.BadZipFile: if *archive* is not a zip file.
    """
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        return {info.filename: zf.read(info) for info in zf.infolist()}


def pack_files(files: Mapping[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, data in files.items():
            info = zipfile.ZipInfo(path, date_time=_ZIP_EPOCH)
            if info.is_dir() and not data:
                info.CRC = 0
                info.compress_size = 0
                info.external_attr = (0o40755 << 16) | 0x10
                zf.writestr(info, b"")
                continue
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, data)
    return buffer.getvalue()


def build_manifest(
    files: Mapping[str, bytes], metadata: PackageMetadata
) -> PackageManifest:
    """Hash every file except ``MANIFEST.json``; paths are sorted."""
    hashes = {
        path: sha256_digest(files[path])
        for path in sorted(p for p in files if p not in _EXCLUDED_FROM_MANIFEST)
    }
    return PackageManifest(
        name=metadata.name,
        description=metadata.description,
        version=metadata.version,
        author=metadata.author,
        files=hashes,
    )


def manifest_base_payload(manifest: Mapping[str, Any]) -> str:
    """Canonical JSON of a manifest dict with ``signatures`` removed."""
    return canonical_json({k: v for k, v in manifest.items() if k != "signatures"})


def manifest_signable_payload(manifest: Mapping[str, Any], publisher: str) -> str:
    return publisher + "\n" + manifest_base_payload(manifest)


def _existing_signatures(manifest_bytes: bytes | None) -> list[SignatureEntry]:
    if manifest_bytes is None:
        return []
    try:
        old = json.loads(manifest_bytes.decode("utf-8"))
    except ValueError:
        logger.debug("Ignoring unreadable %s while re-signing", MANIFEST_NAME)
        return []
    raw = old.get("signatures") if isinstance(old, dict) else None

    kept: list[SignatureEntry] = []
    for item in raw if isinstance(raw, list) else []:
        try:
            kept.append(SignatureEntry.model_validate(item))
        except ValueError:
            logger.debug("Dropping malformed signature entry while re-signing: %r", item)
    return kept


# ---------------------------------------------------------------------------
# KeyManager
# ---------------------------------------------------------------------------


class KeyManager:
    """Generate and load raw Ed25519 key material."""

    def generate_keypair(self) -> KeyPair:
        private_key = Ed25519PrivateKey.generate()
        return KeyPair(
            private_key=private_key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            ),
            public_key=private_key.public_key().public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            ),
        )

    def derive_public_key(self, private_key: bytes) -> bytes:
        return (
            _load_signing_key(private_key)
            .public_key()
            .public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
        )

    def load_private_key(self, encoded: str, password: bytes | None = None) -> bytes:
        """Return raw private key bytes from base64 text or a PKCS8 PEM block.

        Raises:
            SigningError: if the text is not a usable Ed25519 private key.
        """
        text = encoded.strip()
        if text.startswith("-----BEGIN"):
            key = serialization.load_pem_private_key(text.encode("ascii"), password=password)
            if not isinstance(key, Ed25519PrivateKey):
                raise SigningError(
                    f"Unsupported key type: {type(key).__name__}. Only Ed25519 is supported."
                )
            return key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            )
        try:
            raw = b64decode(text)
        except ValueError as exc:
            raise SigningError("Invalid private key format") from exc
        _load_signing_key(raw)
        return raw

    def build_key_manifest(
        self,
        key_id: str,
        public_key: bytes,
        expires: datetime,
        revoked: bool = False,
    ) -> KeyManifest:
        """Build a one-key ``notar-keys.json`` document."""
        return KeyManifest(
            keys=[
                PublicKeyEntry(
                    key_id=key_id,
                    algorithm="ed25519",
                    public_key=b64encode(public_key),
                    expires=expires.isoformat(timespec="milliseconds").replace(
                        "+00:00", "Z"
                    ),
                    revoked=revoked,
                )
            ]
        )

    def save_key_manifest(self, manifest: KeyManifest, path: str) -> Path:
        out_path = Path(path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(
            json.dumps(manifest.to_wire(), indent=2) + "\n", encoding="utf-8"
        )
        return out_path


def format_dns_txt_record(
    key_id: str, public_key_b64: str, expires_unix: int
) -> tuple[str, str]:
    """Return ``(name_prefix, value)`` for a DNS TXT key record.

    The record lives at ``<name_prefix>.<domain>``.
    """
    value = f"v=sk1; k=ed25519; p={public_key_b64}; exp={expires_unix}"
    return f"{DNS_LABEL}.{key_id}", value


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------


class Signer:
    """Sign documents and archives with a raw Ed25519 private key.

    Signing never touches the network.
    """

    def sign_document(
        self,
        raw: str,
        private_key: bytes,
        key_id: str | None = None,
        publisher: str | None = None,
    ) -> str:
        """Add (or replace) this signer's entry in the document's front matter.

        Args:
            raw: Document text with a front matter header.
            private_key: 32-byte Ed25519 private key.
            key_id: Publisher-chosen key label; empty means unspecified.
            publisher: Domain the signature is scoped to.  Defaults to the
                document's ``author`` field.

        Raises:
            FrontMatterError: if required fields are missing.
            SigningError: if no publisher can be determined.
        """
        fields, body = parse_document(raw)
        resolved = publisher if publisher is not None else fields.get("author")
        if not resolved:
            raise SigningError(
                "Publisher is required: pass publisher or set author in front matter"
            )
        resolved = str(resolved)

        # The legacy single "signature" field is dropped before signing.
        signed = {k: v for k, v in fields.items() if k != "signature"}
        payload = scope_payload(document_base_payload(signed, body), resolved)
        entry = SignatureEntry(
            key_id=key_id or "",
            publisher=resolved,
            value=_sign(payload, private_key),
        )

        existing = fields.get("signatures")
        signed["signatures"] = _merge_signatures(
            existing if isinstance(existing, list) else [], entry
        )
        logger.debug("Signed document %r for %s (%s)", fields["name"], resolved, entry.key_id)
        return frontmatter.stringify(body, signed)

    def sign_archive(
        self,
        archive: bytes,
        metadata: PackageMetadata,
        private_key: bytes,
    ) -> bytes:
        """Rebuild ``MANIFEST.json`` inside *archive*, sign it and repack.

        Signatures already present in an old manifest are kept unless they
        share this signer's (keyId, publisher).  A legacy ``SIGNATURE`` file
        is removed.

        Raises:
            SigningError: if the archive is unreadable or no publisher is set.
        """
        try:
            files = extract_files(archive)
        except zipfile.BadZipFile as exc:
            raise SigningError("Input is not a valid zip archive") from exc

        publisher = metadata.publisher if metadata.publisher is not None else metadata.author
        if not publisher:
            raise SigningError(
                "Publisher is required: provide metadata.publisher or metadata.author"
            )

        files.pop(LEGACY_SIGNATURE_NAME, None)
        manifest = build_manifest(files, metadata)
        unsigned = manifest.model_dump(mode="json", by_alias=True, exclude={"signatures"})
        payload = scope_payload(manifest_base_payload(unsigned), publisher)
        entry = SignatureEntry(
            key_id=metadata.key_id or "",
            publisher=publisher,
            value=_sign(payload, private_key),
        )

        manifest.signatures = _merge_signatures(
            _existing_signatures(files.get(MANIFEST_NAME)), entry
        )
        files[MANIFEST_NAME] = json.dumps(
            manifest.model_dump(mode="json", by_alias=True),
            indent=2,
            ensure_ascii=False,
        ).encode("utf-8")

        logger.debug(
            "Signed archive %r (%d files) for %s", metadata.name, len(manifest.files), publisher
        )
        return pack_files(files)

    def sign(
        self,
        data: str | bytes,
        private_key: bytes,
        *,
        key_id: str | None = None,
        publisher: str | None = None,
        metadata: PackageMetadata | None = None,
    ) -> str | bytes:
        """Sign a document (``str``) or an archive (``bytes``).

        Archives require *metadata*; *key_id* / *publisher* override the
        values it carries.
        """
        if isinstance(data, str):
            return self.sign_document(data, private_key, key_id=key_id, publisher=publisher)
        if metadata is None:
            raise SigningError("Archive signing requires package metadata")
        overrides = {
            k: v for k, v in {"key_id": key_id, "publisher": publisher}.items() if v is not None
        }
        return self.sign_archive(data, metadata.model_copy(update=overrides), private_key)


__all__ = [
    "FrontMatterError",
    "KeyFetchError",
    "KeyManager",
    "LEGACY_SIGNATURE_NAME",
    "MANIFEST_NAME",
    "NotarError",
    "SIGNATURE_PREFIX",
    "Signer",
    "SigningError",
    "build_manifest",
    "build_signable_payload",
    "canonical_json",
    "document_base_payload",
    "extract_files",
    "format_dns_txt_record",
    "manifest_base_payload",
    "manifest_signable_payload",
    "pack_files",
    "parse_document",
    "scope_payload",
    "sha256_digest",
    "verify_ed25519",
]
