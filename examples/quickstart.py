"""aumai-notar quickstart: working demonstrations of the main features.

Run this file directly to verify your installation:

    python examples/quickstart.py

No network access is needed; publisher key discovery is served from an
in-memory ``httpx.MockTransport``.
"""

from __future__ import annotations

import asyncio
import base64
from datetime import UTC, datetime, timedelta

import httpx

from aumai_notar import (
    KeyManager,
    PackageMetadata,
    Signer,
    Verifier,
    VerifyOptions,
    format_dns_txt_record,
)
from aumai_notar.core import extract_files, pack_files

DOCUMENT = """---
name: release-notes
description: What changed in 2.0
version: 2.0.0
author: example.com
---
# Release notes

Faster, smaller, safer.
"""


# ---------------------------------------------------------------------------
# Demo 1: sign and verify a document with an explicit key
# ---------------------------------------------------------------------------

def demo_document() -> None:
    print("\n=== Demo 1: Document Sign & Verify ===")

    km = KeyManager()
    pair = km.generate_keypair()
    signed = Signer().sign_document(DOCUMENT, pair.private_key, key_id="key_2026")
    print("  Signed front matter:")
    for line in signed.splitlines()[:12]:
        print(f"    {line}")

    result = Verifier().verify_document(signed, pair.public_key)
    print(f"  Signature valid: {result.valid}")
    assert result.valid

    tampered = signed.replace("safer", "riskier")
    result = Verifier().verify_document(tampered, pair.public_key)
    print(f"  Tampered body rejected: {not result.valid}  (code: {result.code.value})")
    assert not result.valid

    print("  Demo 1 passed.")


# ---------------------------------------------------------------------------
# Demo 2: archive manifest and tamper detection
# ---------------------------------------------------------------------------

def demo_archive() -> None:
    print("\n=== Demo 2: Archive Integrity ===")

    pair = KeyManager().generate_keypair()
    archive = pack_files({"README.md": b"# Tool\n", "bin/run.sh": b"echo ok\n"})
    metadata = PackageMetadata(
        name="tool", description="A small tool", version="1.0.0", author="example.com"
    )
    signed = Signer().sign_archive(archive, metadata, pair.private_key)
    print(f"  Archive files after signing: {sorted(extract_files(signed))}")

    result = Verifier().verify_archive(signed, pair.public_key)
    print(f"  Archive valid: {result.valid}")
    assert result.valid

    files = extract_files(signed)
    files["bin/run.sh"] = b"rm -rf /\n"
    result = Verifier().verify_archive(pack_files(files), pair.public_key)
    print(f"  Modified file detected: {result.code.value}  ({result.reason})")
    assert not result.valid

    print("  Demo 2 passed.")


# ---------------------------------------------------------------------------
# Demo 3: publisher-rooted verification
# ---------------------------------------------------------------------------

def demo_publisher_keys() -> None:
    print("\n=== Demo 3: Publisher Key Discovery ===")

    pair = KeyManager().generate_keypair()
    public_b64 = base64.b64encode(pair.public_key).decode("ascii")
    expires = datetime.now(tz=UTC) + timedelta(days=365)

    name, value = format_dns_txt_record("key_2026", public_b64, int(expires.timestamp()))
    print(f"  DNS TXT record: {name}.example.com -> {value[:40]}...")

    key_manifest = KeyManager().build_key_manifest("key_2026", pair.public_key, expires)

    def serve(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/.well-known/notar-keys.json":
            return httpx.Response(200, json=key_manifest.to_wire())
        return httpx.Response(200, json={"Status": 3})

    signed = Signer().sign_document(DOCUMENT, pair.private_key, key_id="key_2026")

    async def verify() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(serve)) as client:
            result = await Verifier().verify_from_publisher(
                signed, VerifyOptions(client=client)
            )
        signer = result.details.signers[0]
        print(f"  Valid: {result.valid}  (key from {signer.key_source.value})")
        assert result.valid

    asyncio.run(verify())
    print("  Demo 3 passed.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run all quickstart demos in sequence."""
    print("aumai-notar quickstart demos")
    print("=" * 45)

    demo_document()
    demo_archive()
    demo_publisher_keys()

    print("\n" + "=" * 45)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
