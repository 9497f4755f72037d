"""CLI entry point for aumai-notar."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import sys
import zipfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

import click

from aumai_notar.config import NotarSettings, VerifyOptions
from aumai_notar.core import (
    MANIFEST_NAME,
    KeyManager,
    NotarError,
    Signer,
    b64decode,
    b64encode,
    format_dns_txt_record,
)
from aumai_notar.discovery import validate_signing_key
from aumai_notar.frontmatter import parse as parse_front_matter
from aumai_notar.models import PackageMetadata, VerifyErrorCode, VerifyResult
from aumai_notar.verifier import Verifier

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_CODE_LABELS = {
    VerifyErrorCode.no_signatures: "No Signatures",
    VerifyErrorCode.malformed_signature: "Malformed Signature",
    VerifyErrorCode.missing_key_id: "Missing Key ID",
    VerifyErrorCode.signature_mismatch: "Content Modified",
    VerifyErrorCode.no_matching_signature: "No Matching Signature",
    VerifyErrorCode.key_not_found: "Key Not Found",
    VerifyErrorCode.key_expired: "Key Expired",
    VerifyErrorCode.key_revoked: "Key Revoked",
    VerifyErrorCode.key_fetch_failed: "Key Fetch Failed",
    VerifyErrorCode.missing_manifest: "Missing Manifest",
    VerifyErrorCode.missing_file: "Missing File",
    VerifyErrorCode.hash_mismatch: "File Tampered",
    VerifyErrorCode.invalid_front_matter: "Invalid Front Matter",
    VerifyErrorCode.network_error: "Network Error",
    VerifyErrorCode.dns_resolution_failed: "DNS Resolution Failed",
}

_SUPPORTED = (".md", ".zip")


def _signed_file_name(name: str) -> str:
    path = Path(name)
    if not path.suffix:
        return f"{name}-signed"
    return f"{path.stem}-signed{path.suffix}"


def _read_private_key(option_value: str | None) -> bytes:
    encoded = option_value
    if not encoded:
        stdin = click.get_text_stream("stdin")
        if not stdin.isatty():
            encoded = stdin.read().strip()
    if not encoded:
        click.echo("Error: No private key provided.", err=True)
        click.echo("Set NOTAR_PRIVATE_KEY or pipe the key via stdin.", err=True)
        sys.exit(2)
    try:
        return KeyManager().load_private_key(encoded)
    except (NotarError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)


def _existing_manifest(data: bytes) -> dict:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            return json.loads(zf.read(MANIFEST_NAME).decode("utf-8"))
    except (KeyError, ValueError, zipfile.BadZipFile):
        return {}


def _print_result(result: VerifyResult) -> None:
    if result.valid:
        click.echo("\n  Valid Signature\n")
    else:
        label = _CODE_LABELS.get(result.code, "Invalid") if result.code else "Invalid"
        click.echo(f"\n  {label}")
        if result.reason:
            click.echo(f"    {result.reason}")
        click.echo()

    details = result.details
    if details is None:
        return
    if details.author:
        click.echo(f"  Author: {details.author}")
    for signer in details.signers or []:
        status = "PASS" if signer.valid else "FAIL"
        source = f" [{signer.key_source.value}]" if signer.key_source else ""
        expires = f" expires {signer.key_expires}" if signer.key_expires else ""
        click.echo(f"  {status} {signer.publisher} ({signer.key_id}){source}{expires}")
        if not signer.valid and signer.reason:
            click.echo(f"    {signer.reason}")
    failed = [f for f in details.files or [] if not f.valid]
    if failed:
        click.echo("\n  File integrity issues:")
        for entry in failed:
            click.echo(f"    {entry.path} -- {entry.code.value if entry.code else ''}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """AumAI Notar: Ed25519 signing and publisher-rooted verification."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@main.command("keygen")
@click.option("--domain", required=True, help="Your domain (e.g. example.com).")
@click.option("--key-id", default=None, help="Key ID (defaults to key_YYYYMMDD).")
@click.option(
    "--output",
    default="notar-keys.json",
    show_default=True,
    metavar="PATH",
    help="Where to write the public key manifest.",
)
@click.option("--days", default=365, show_default=True, help="Key validity in days.")
def keygen_command(domain: str, key_id: str | None, output: str, days: int) -> None:
    """Generate an Ed25519 key pair and its publication records."""
    today = datetime.now(tz=UTC)
    key_id = key_id or f"key_{today:%Y%m%d}"
    expires = today + timedelta(days=days)

    km = KeyManager()
    pair = km.generate_keypair()
    public_b64 = b64encode(pair.public_key)
    out_path = km.save_key_manifest(
        km.build_key_manifest(key_id, pair.public_key, expires), output
    )
    name_prefix, txt_value = format_dns_txt_record(key_id, public_b64, int(expires.timestamp()))

    click.echo(f"\nKey pair generated for domain: {domain}\n")
    click.echo(f"  Key ID:      {key_id}")
    click.echo(f"  Private Key: {b64encode(pair.private_key)}    <- SAVE THIS. It will NOT be stored.\n")
    click.echo(f"  Public key written to: {out_path}")
    click.echo(f"  Deploy this file to: https://{domain}/.well-known/notar-keys.json\n")
    click.echo("  Or add a DNS TXT record:")
    click.echo(f"    Name:  {name_prefix}.{domain}")
    click.echo(f"    Value: {txt_value}\n")


@main.command("sign")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--key-id", default=None, help="Key ID (optional).")
@click.option("--publisher", default=None, help="Publisher domain.")
@click.option("--author", default=None, help="Archive author (defaults to publisher).")
@click.option("--output", default=None, metavar="PATH", help="Output file path.")
@click.option(
    "--private-key",
    envvar="NOTAR_PRIVATE_KEY",
    default=None,
    help="Base64 private key (or set NOTAR_PRIVATE_KEY, or pipe via stdin).",
)
@click.option(
    "--check-key",
    is_flag=True,
    help="Confirm the key is published by the publisher before signing.",
)
def sign_command(
    file: str,
    key_id: str | None,
    publisher: str | None,
    author: str | None,
    output: str | None,
    private_key: str | None,
    check_key: bool,
) -> None:
    """Sign a document (.md) or archive (.zip)."""
    path = Path(file)
    ext = path.suffix.lower()
    if ext not in _SUPPORTED:
        click.echo(f'Error: Unsupported file type "{ext}". Expected .md or .zip', err=True)
        sys.exit(2)

    key = _read_private_key(private_key)
    out_path = Path(output) if output else Path.cwd() / _signed_file_name(path.name)
    signer = Signer()

    try:
        if ext == ".md":
            content = path.read_text(encoding="utf-8")
            fields, _ = parse_front_matter(content)
            sigs = fields.get("signatures") or []
            first = sigs[0] if isinstance(sigs, list) and sigs else None
            key_id = key_id or (first.key_id if first else None) or None
            publisher = (
                publisher or (first.publisher if first else None) or str(fields.get("author") or "")
            )
            if check_key:
                asyncio.run(validate_signing_key(key, publisher, key_id))
            signed_text = signer.sign_document(content, key, key_id=key_id, publisher=publisher)
            out_path.write_text(signed_text, encoding="utf-8")
        else:
            data = path.read_bytes()
            existing = _existing_manifest(data)
            existing_sigs = [s for s in existing.get("signatures") or [] if isinstance(s, dict)]
            existing_author = existing.get("author") or ""
            publisher = publisher or existing_author
            key_id = key_id or (existing_sigs[0].get("keyId") if existing_sigs else None) or None
            metadata = PackageMetadata(
                name=existing.get("name") or path.stem,
                description=existing.get("description") or "",
                version=existing.get("version") or "1.0.0",
                author=author or existing_author or publisher,
                key_id=key_id,
                publisher=publisher or None,
            )
            if check_key:
                asyncio.run(
                    validate_signing_key(key, metadata.publisher or metadata.author, key_id)
                )
            out_path.write_bytes(signer.sign_archive(data, metadata, key))
    except NotarError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(2)

    click.echo(f"Signed: {out_path}")


@main.command("verify")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--public-key", default=None, help="Public key (base64) to verify against.")
@click.option("--json", "json_output", is_flag=True, help="Emit the result as JSON.")
@click.option("--no-dns", is_flag=True, help="Only consult the HTTPS key manifest.")
def verify_command(
    file: str, public_key: str | None, json_output: bool, no_dns: bool
) -> None:
    """Verify a signed document or archive."""
    path = Path(file)
    ext = path.suffix.lower()
    if ext not in _SUPPORTED:
        click.echo(f'Error: Unsupported file type "{ext}". Expected .md or .zip', err=True)
        sys.exit(2)

    data: str | bytes = (
        path.read_text(encoding="utf-8") if ext == ".md" else path.read_bytes()
    )
    verifier = Verifier()

    if public_key:
        try:
            key_bytes = b64decode(public_key)
        except ValueError:
            click.echo("Error: Invalid public key format.", err=True)
            sys.exit(2)
        result = verifier.verify(data, key_bytes)
    else:
        options = VerifyOptions(
            settings=NotarSettings.from_env(),
            resolve_txt=False if no_dns else None,
        )
        result = asyncio.run(verifier.verify_from_publisher(data, options))

    if json_output:
        click.echo(result.to_json())
    else:
        _print_result(result)

    sys.exit(0 if result.valid else 1)


@main.command("inspect")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
def inspect_command(file: str) -> None:
    """Show the metadata and signature entries without verifying them."""
    path = Path(file)
    if path.suffix.lower() == ".zip":
        manifest = _existing_manifest(path.read_bytes())
        if not manifest:
            click.echo(f"Error: no readable {MANIFEST_NAME} in archive", err=True)
            sys.exit(1)
        meta = manifest
        signatures = [
            (s.get("keyId", ""), s.get("publisher", ""))
            for s in manifest.get("signatures") or []
            if isinstance(s, dict)
        ]
        file_count = len(manifest.get("files") or {})
    else:
        meta, _ = parse_front_matter(path.read_text(encoding="utf-8"))
        signatures = [(s.key_id, s.publisher) for s in meta.get("signatures") or []]
        file_count = None

    click.echo(f"Name         : {meta.get('name', '')}")
    click.echo(f"Description  : {meta.get('description', '')}")
    click.echo(f"Version      : {meta.get('version', '')}")
    click.echo(f"Author       : {meta.get('author', '')}")
    if file_count is not None:
        click.echo(f"Files        : {file_count}")
    click.echo(f"\nSignatures   : {len(signatures)}")
    for sig_key_id, sig_publisher in signatures:
        click.echo(f"  {sig_publisher} ({sig_key_id or 'any key'})")


if __name__ == "__main__":
    main()
