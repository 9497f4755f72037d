"""aumai-notar: Ed25519 content signing with publisher-rooted key discovery."""

from aumai_notar.config import NotarSettings, VerifyOptions
from aumai_notar.core import (
    FrontMatterError,
    KeyFetchError,
    KeyManager,
    NotarError,
    Signer,
    SigningError,
    build_signable_payload,
    format_dns_txt_record,
)
from aumai_notar.discovery import (
    KeyResolver,
    fetch_public_key,
    fetch_public_keys,
    parse_dns_txt_record,
    resolve_public_key,
    validate_signing_key,
)
from aumai_notar.models import (
    DnsTxtKeyRecord,
    FileIntegrityResult,
    KeyManifest,
    KeyPair,
    KeySource,
    PackageManifest,
    PackageMetadata,
    PublicKeyEntry,
    ResolvedKey,
    SignatureEntry,
    SignerResult,
    VerifyDetails,
    VerifyErrorCode,
    VerifyResult,
)
from aumai_notar.verifier import Verifier

__version__ = "0.1.0"

__all__ = [
    "DnsTxtKeyRecord",
    "FileIntegrityResult",
    "FrontMatterError",
    "KeyFetchError",
    "KeyManager",
    "KeyManifest",
    "KeyPair",
    "KeyResolver",
    "KeySource",
    "NotarError",
    "NotarSettings",
    "PackageManifest",
    "PackageMetadata",
    "PublicKeyEntry",
    "ResolvedKey",
    "SignatureEntry",
    "Signer",
    "SignerResult",
    "SigningError",
    "Verifier",
    "VerifyDetails",
    "VerifyErrorCode",
    "VerifyOptions",
    "VerifyResult",
    "build_signable_payload",
    "fetch_public_key",
    "fetch_public_keys",
    "format_dns_txt_record",
    "parse_dns_txt_record",
    "resolve_public_key",
    "validate_signing_key",
]
