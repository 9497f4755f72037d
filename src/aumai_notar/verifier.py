"""Signature and archive integrity verification for aumai-notar."""

from __future__ import annotations

import asyncio
import json
import logging
import zipfile
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from aumai_notar.config import VerifyOptions
from aumai_notar.core import (
    MANIFEST_NAME,
    SIGNATURE_PREFIX,
    FrontMatterError,
    b64decode,
    document_base_payload,
    extract_files,
    manifest_base_payload,
    parse_document,
    scope_payload,
    sha256_digest,
    verify_ed25519,
)
from aumai_notar.discovery import KeyResolver, open_client
from aumai_notar.models import (
    FileIntegrityResult,
    SignatureEntry,
    SignerResult,
    VerifyDetails,
    VerifyErrorCode,
    VerifyResult,
)

logger = logging.getLogger(__name__)


@dataclass
class _Signable:
    """Everything a verification pass needs once the input has been parsed."""

    meta: dict[str, Any]
    # Entries that failed to decode are carried as ready-made results.
    signatures: list[SignatureEntry | SignerResult]
    base_payload: str
    files: dict[str, bytes] | None = None
    manifest_files: dict[str, str] | None = None


def _meta(source: Mapping[str, Any]) -> dict[str, Any]:
    return {key: source.get(key) for key in ("name", "description", "version", "author")}


def _failure(code: VerifyErrorCode, reason: str) -> VerifyResult:
    return VerifyResult(valid=False, code=code, reason=reason)


def _prepare_document(raw: str) -> _Signable | VerifyResult:
    try:
        fields, body = parse_document(raw)
    except FrontMatterError as exc:
        return _failure(VerifyErrorCode.invalid_front_matter, str(exc))

    signatures = fields.get("signatures")
    if not isinstance(signatures, list) or not signatures:
        return _failure(VerifyErrorCode.no_signatures, "No signatures found in front matter")

    return _Signable(
        meta=_meta(fields),
        signatures=signatures,
        base_payload=document_base_payload(fields, body),
    )


def _read_signature(raw: Any) -> SignatureEntry | SignerResult:
    try:
        return SignatureEntry.model_validate(raw)
    except ValidationError:
        fields = raw if isinstance(raw, dict) else {}
        return SignerResult(
            key_id=str(fields.get("keyId") or ""),
            publisher=str(fields.get("publisher") or ""),
            valid=False,
            code=VerifyErrorCode.malformed_signature,
            reason="Signature entry is not a valid signature object",
        )


def _prepare_archive(archive: bytes) -> _Signable | VerifyResult:
    try:
        files = extract_files(archive)
    except zipfile.BadZipFile:
        return _failure(VerifyErrorCode.missing_manifest, "Package is not a readable zip archive")

    manifest_bytes = files.get(MANIFEST_NAME)
    if manifest_bytes is None:
        return _failure(VerifyErrorCode.missing_manifest, f"Missing {MANIFEST_NAME} in package")

    try:
        manifest = json.loads(manifest_bytes.decode("utf-8"))
        if not isinstance(manifest, dict):
            raise ValueError("manifest is not a JSON object")
        raw_signatures = manifest.get("signatures") or []
        if not isinstance(raw_signatures, list):
            raise ValueError("signatures is not a JSON array")
        signatures = [_read_signature(s) for s in raw_signatures]
        table = manifest.get("files") or {}
        if not isinstance(table, dict):
            raise ValueError("files is not a JSON object")
    except ValueError as exc:
        logger.debug("Unreadable manifest: %s", exc)
        return _failure(
            VerifyErrorCode.missing_manifest, f"{MANIFEST_NAME} is not a valid manifest"
        )

    if not signatures:
        return _failure(VerifyErrorCode.no_signatures, "No signatures found in manifest")

    return _Signable(
        meta=_meta(manifest),
        signatures=signatures,
        base_payload=manifest_base_payload(manifest),
        files=files,
        manifest_files={str(k): str(v) for k, v in table.items()},
    )


def _decode_signature(entry: SignatureEntry) -> bytes | SignerResult:
    if not entry.value.startswith(SIGNATURE_PREFIX):
        return SignerResult(
            key_id=entry.key_id,
            publisher=entry.publisher,
            valid=False,
            code=VerifyErrorCode.malformed_signature,
            reason=f"Signature does not start with {SIGNATURE_PREFIX} prefix",
        )
    try:
        return b64decode(entry.value[len(SIGNATURE_PREFIX):])
    except ValueError:
        return SignerResult(
            key_id=entry.key_id,
            publisher=entry.publisher,
            valid=False,
            code=VerifyErrorCode.malformed_signature,
            reason="Signature is not valid base64",
        )


def verify_manifest_hashes(
    manifest_files: Mapping[str, str], files: Mapping[str, bytes]
) -> list[FileIntegrityResult]:
    """Re-hash every file the manifest lists, in manifest order."""
    results: list[FileIntegrityResult] = []
    for path, expected in manifest_files.items():
        data = files.get(path)
        if data is None:
            results.append(
                FileIntegrityResult(
                    path=path,
                    valid=False,
                    code=VerifyErrorCode.missing_file,
                    expected_hash=expected,
                )
            )
            continue
        actual = sha256_digest(data)
        if actual != expected:
            results.append(
                FileIntegrityResult(
                    path=path,
                    valid=False,
                    code=VerifyErrorCode.hash_mismatch,
                    expected_hash=expected,
                    actual_hash=actual,
                )
            )
        else:
            results.append(
                FileIntegrityResult(
                    path=path, valid=True, expected_hash=expected, actual_hash=actual
                )
            )
    return results


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class Verifier:
    """Verify signed documents and archives.

    Two modes are offered: against a caller-supplied public key, or against
    the keys each signer's publisher currently vouches for.
    """

    # ------------------------------------------------------------------
    # Explicit public key
    # ------------------------------------------------------------------

    def verify_document(self, raw: str, public_key: bytes) -> VerifyResult:
        """Verify *raw* against a raw 32-byte Ed25519 *public_key*."""
        return self._verify_with_key(_prepare_document(raw), public_key)

    def verify_archive(self, archive: bytes, public_key: bytes) -> VerifyResult:
        """Verify a signed zip archive against *public_key*."""
        return self._verify_with_key(_prepare_archive(archive), public_key)

    def verify(self, data: str | bytes, public_key: bytes) -> VerifyResult:
        if isinstance(data, str):
            return self.verify_document(data, public_key)
        return self.verify_archive(data, public_key)

    def _verify_with_key(
        self, signable: _Signable | VerifyResult, public_key: bytes
    ) -> VerifyResult:
        if isinstance(signable, VerifyResult):
            return signable

        signers: list[SignerResult] = []
        for entry in signable.signatures:
            if isinstance(entry, SignerResult):
                signers.append(entry)
                continue
            decoded = _decode_signature(entry)
            if isinstance(decoded, SignerResult):
                signers.append(decoded)
                continue
            payload = scope_payload(signable.base_payload, entry.publisher)
            valid = verify_ed25519(decoded, payload, public_key)
            signers.append(
                SignerResult(
                    key_id=entry.key_id,
                    publisher=entry.publisher,
                    valid=valid,
                    code=None if valid else VerifyErrorCode.signature_mismatch,
                    reason=None if valid else "Signature does not match content with provided key",
                )
            )
        return self._conclude(signable, signers, "No matching signature for provided key")

    # ------------------------------------------------------------------
    # Publisher key resolution
    # ------------------------------------------------------------------

    async def verify_document_from_publisher(
        self, raw: str, options: VerifyOptions | None = None
    ) -> VerifyResult:
        """Verify *raw* using keys resolved from each signer's publisher."""
        return await self._verify_resolved(_prepare_document(raw), options)

    async def verify_archive_from_publisher(
        self, archive: bytes, options: VerifyOptions | None = None
    ) -> VerifyResult:
        """Verify a signed archive using keys resolved from each publisher."""
        return await self._verify_resolved(_prepare_archive(archive), options)

    async def verify_from_publisher(
        self, data: str | bytes, options: VerifyOptions | None = None
    ) -> VerifyResult:
        if isinstance(data, str):
            return await self.verify_document_from_publisher(data, options)
        return await self.verify_archive_from_publisher(data, options)

    async def _verify_resolved(
        self, signable: _Signable | VerifyResult, options: VerifyOptions | None
    ) -> VerifyResult:
        if isinstance(signable, VerifyResult):
            return signable

        opts = options or VerifyOptions()
        async with open_client(opts) as client:
            resolver = KeyResolver(client, opts)
            signers = await asyncio.gather(
                *(
                    self._verify_entry(resolver, signable.base_payload, entry)
                    for entry in signable.signatures
                )
            )
        return self._conclude(signable, list(signers), "No valid signature found")

    async def _verify_entry(
        self, resolver: KeyResolver, base_payload: str, entry: SignatureEntry | SignerResult
    ) -> SignerResult:
        if isinstance(entry, SignerResult):
            return entry
        decoded = _decode_signature(entry)
        if isinstance(decoded, SignerResult):
            return decoded
        if not entry.key_id:
            return await self._try_all_keys(resolver, base_payload, decoded, entry.publisher)

        publisher, key_id = entry.publisher, entry.key_id
        resolved = await resolver.resolve_public_key(publisher, key_id)

        if resolved.key is None:
            return SignerResult(
                key_id=key_id,
                publisher=publisher,
                valid=False,
                code=resolved.code or VerifyErrorCode.key_not_found,
                reason=f"Could not resolve public key for {publisher} ({key_id})",
                key_source=resolved.source,
            )

        if resolved.code in (VerifyErrorCode.key_expired, VerifyErrorCode.key_revoked):
            state = "expired" if resolved.code is VerifyErrorCode.key_expired else "been revoked"
            return SignerResult(
                key_id=key_id,
                publisher=publisher,
                valid=False,
                code=resolved.code,
                reason=f"Key {key_id} has {state}",
                key_source=resolved.source,
                key_expires=resolved.key.expires,
            )

        try:
            public_key = b64decode(resolved.key.public_key)
        except ValueError:
            public_key = b""
        valid = verify_ed25519(decoded, scope_payload(base_payload, publisher), public_key)
        logger.debug("Signer %s/%s valid=%s via %s", publisher, key_id, valid, resolved.source)
        return SignerResult(
            key_id=key_id,
            publisher=publisher,
            valid=valid,
            code=None if valid else VerifyErrorCode.signature_mismatch,
            reason=None if valid else "Signature does not match content",
            key_source=resolved.source,
            key_expires=resolved.key.expires,
        )

    async def _try_all_keys(
        self,
        resolver: KeyResolver,
        base_payload: str,
        signature: bytes,
        publisher: str,
    ) -> SignerResult:
        """Signatures without a keyId are tried against every valid key."""
        candidates = await resolver.candidate_keys(publisher)
        if not candidates:
            return SignerResult(
                key_id="",
                publisher=publisher,
                valid=False,
                code=VerifyErrorCode.key_not_found,
                reason=f"No public keys found for {publisher}",
            )

        payload = scope_payload(base_payload, publisher)
        for key, source in candidates:
            try:
                public_key = b64decode(key.public_key)
            except ValueError:
                continue
            if verify_ed25519(signature, payload, public_key):
                return SignerResult(
                    key_id=key.key_id,
                    publisher=publisher,
                    valid=True,
                    key_source=source,
                    key_expires=key.expires,
                )

        return SignerResult(
            key_id="",
            publisher=publisher,
            valid=False,
            code=VerifyErrorCode.signature_mismatch,
            reason=(
                f"Signature does not match any of {len(candidates)} key(s) for {publisher}"
            ),
        )

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _conclude(
        self, signable: _Signable, signers: list[SignerResult], no_match_reason: str
    ) -> VerifyResult:
        """Any valid signer passes; archives then need every listed file intact."""
        if not any(s.valid for s in signers):
            return VerifyResult(
                valid=False,
                code=VerifyErrorCode.no_matching_signature,
                reason=no_match_reason,
                details=VerifyDetails(**signable.meta, signers=signers),
            )

        if signable.files is None or signable.manifest_files is None:
            return VerifyResult(
                valid=True, details=VerifyDetails(**signable.meta, signers=signers)
            )

        file_results = verify_manifest_hashes(signable.manifest_files, signable.files)
        details = VerifyDetails(**signable.meta, signers=signers, files=file_results)
        failed = next((f for f in file_results if not f.valid), None)
        if failed is None:
            return VerifyResult(valid=True, details=details)

        if failed.code is VerifyErrorCode.missing_file:
            reason = f"Missing file: {failed.path} (expected {failed.expected_hash})"
        else:
            reason = (
                f"Hash mismatch for file: {failed.path} "
                f"(expected {failed.expected_hash}, got {failed.actual_hash})"
            )
        return VerifyResult(valid=False, code=failed.code, reason=reason, details=details)


__all__ = ["Verifier", "verify_manifest_hashes"]
