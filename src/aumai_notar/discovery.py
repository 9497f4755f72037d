"""Publisher key discovery and trust resolution.

Keys are looked up through two independent channels:

- HTTPS: ``https://<publisher>/.well-known/notar-keys.json``
- DNS: a TXT record at ``notar.<keyId>.<publisher>`` queried through a
  DNS-over-HTTPS JSON resolver

For a specific keyId both channels race and the first one that finds a key
wins.  When neither finds one, the HTTPS outcome is reported.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TypeVar

import httpx

from aumai_notar.config import VerifyOptions
from aumai_notar.core import (
    DNS_LABEL,
    KeyFetchError,
    KeyManager,
    SigningError,
    b64decode,
    b64encode,
)
from aumai_notar.models import (
    DnsTxtKeyRecord,
    KeyManifest,
    KeySource,
    PublicKeyEntry,
    ResolvedKey,
    VerifyErrorCode,
)

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/notar-keys.json"
DEFAULT_DNS_KEY_ID = "key"
TXT_RECORD_TYPE = 16

_TXT_CHUNK_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _is_local(host: str) -> bool:
    return host.startswith(("localhost", "127.0.0.1"))


def keys_url(publisher: str) -> str:
    """Location of *publisher*'s key manifest; loopback hosts use plain HTTP."""
    scheme = "http" if _is_local(publisher) else "https"
    return f"{scheme}://{publisher}{WELL_KNOWN_PATH}"


def dns_record_name(publisher: str, key_id: str) -> str:
    return f"{DNS_LABEL}.{key_id}.{publisher}"


def parse_dns_txt_record(txt: str | None) -> DnsTxtKeyRecord | None:
    """Parse ``v=sk1; k=ed25519; p=<base64>; exp=<unix seconds>``.

    Returns ``None`` for unsupported versions or algorithms, missing tags,
    malformed ``tag=value`` pairs and non-positive or non-numeric expiry.
    """
    if not txt or not isinstance(txt, str):
        return None

    tags: dict[str, str] = {}
    for part in txt.split(";"):
        item = part.strip()
        if not item:
            continue
        eq = item.find("=")
        if eq < 1:
            return None
        tags[item[:eq].strip()] = item[eq + 1:].strip()

    version, algorithm = tags.get("v"), tags.get("k")
    public_key, exp = tags.get("p"), tags.get("exp")
    if not (version and algorithm and public_key and exp):
        return None
    if version != "sk1" or algorithm != "ed25519":
        return None

    try:
        expires = float(exp)
    except ValueError:
        return None
    if not math.isfinite(expires) or expires <= 0:
        return None

    return DnsTxtKeyRecord(
        version=version,
        algorithm=algorithm,
        public_key=public_key,
        expires=int(expires),
    )


def _txt_value(data: str) -> str:
    # DoH answers carry quoted character-strings; long records are split.
    chunks = _TXT_CHUNK_RE.findall(data)
    return "".join(chunks) if chunks else data


def _iso_from_unix(seconds: int) -> str:
    moment = datetime.fromtimestamp(seconds, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def check_key_validity(key: PublicKeyEntry, now: datetime) -> VerifyErrorCode | None:
    """Lifecycle check: revoked first, then expiry at or before *now*.

    An expiry that cannot be parsed counts as expired.
    """
    if key.revoked:
        return VerifyErrorCode.key_revoked
    expires = key.expires_at()
    if expires is None or expires <= now:
        return VerifyErrorCode.key_expired
    return None


def is_key_valid(key: PublicKeyEntry, now: datetime) -> bool:
    return check_key_validity(key, now) is None


def _decodes_to(encoded: str, expected: bytes) -> bool:
    try:
        return b64decode(encoded) == expected
    except ValueError:
        return False


@asynccontextmanager
async def open_client(options: VerifyOptions) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the injected client, or a short-lived one when none was given."""
    if options.client is not None:
        yield options.client
        return
    async with httpx.AsyncClient(timeout=options.settings.http_timeout) as client:
        yield client


async def _first_found(tasks: list[asyncio.Task[ResolvedKey]]) -> ResolvedKey | None:
    """Return the first task result that carries a key; cancel the rest."""
    pending: set[asyncio.Task[ResolvedKey]] = set(tasks)
    try:
        while pending:
            done, pending = await asyncio.wait(
                pending, return_when=asyncio.FIRST_COMPLETED
            )
            for task in (t for t in tasks if t in done):
                result = task.result()
                if result.key is not None:
                    return result
        return None
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


# ---------------------------------------------------------------------------
# KeyResolver
# ---------------------------------------------------------------------------


class KeyResolver:
    """Resolve publisher keys over HTTPS and DNS using an injected client.

    Args:
        client: Async HTTP client used for both channels.
        options: Verification instant, DNS toggle and settings.
    """

    def __init__(self, client: httpx.AsyncClient, options: VerifyOptions | None = None) -> None:
        self._client = client
        self._options = options or VerifyOptions()
        self._settings = self._options.settings
        self._now = self._options.current_time()

    @property
    def now(self) -> datetime:
        return self._now

    # ------------------------------------------------------------------
    # HTTPS channel
    # ------------------------------------------------------------------

    async def fetch_key_manifest(self, publisher: str) -> KeyManifest:
        """Download and decode *publisher*'s key manifest.

        Raises:
            KeyFetchError: on a non-2xx response.
            httpx.HTTPError: on transport failure.
            httpx.InvalidURL: if *publisher* does not form a valid host.
            ValueError: if the body is not a key manifest.
        """
        url = keys_url(publisher)
        response = await self._client.get(
            url, timeout=self._settings.http_timeout, follow_redirects=True
        )
        if not response.is_success:
            raise KeyFetchError(f"Failed to fetch keys from {url}: {response.status_code}")
        return KeyManifest.model_validate(response.json())

    async def fetch_public_keys(self, publisher: str) -> list[PublicKeyEntry]:
        """All currently valid keys in *publisher*'s manifest."""
        manifest = await self.fetch_key_manifest(publisher)
        return [key for key in manifest.keys if is_key_valid(key, self._now)]

    async def fetch_public_key(self, publisher: str, key_id: str) -> PublicKeyEntry | None:
        """The valid key named *key_id*, or ``None`` if absent, expired or revoked."""
        manifest = await self.fetch_key_manifest(publisher)
        key = next((k for k in manifest.keys if k.key_id == key_id), None)
        if key is None or not is_key_valid(key, self._now):
            return None
        return key

    async def resolve_from_https(self, publisher: str, key_id: str) -> ResolvedKey:
        try:
            manifest = await self.fetch_key_manifest(publisher)
        except KeyFetchError as exc:
            logger.info("%s", exc)
            return ResolvedKey(code=VerifyErrorCode.key_fetch_failed, source=KeySource.https)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            logger.warning("Key manifest for %s unavailable: %s", publisher, exc)
            return ResolvedKey(code=VerifyErrorCode.network_error, source=KeySource.https)

        key = next((k for k in manifest.keys if k.key_id == key_id), None)
        if key is None:
            return ResolvedKey(code=VerifyErrorCode.key_not_found, source=KeySource.https)
        return ResolvedKey(
            key=key, code=check_key_validity(key, self._now), source=KeySource.https
        )

    # ------------------------------------------------------------------
    # DNS channel
    # ------------------------------------------------------------------

    async def query_dns_txt(self, name: str) -> list[str]:
        """TXT strings for *name* from the DNS-over-HTTPS resolver.

        A non-success status, a non-zero DNS status or an empty answer all
        yield an empty list.

        Raises:
            ValueError: if the body is not JSON or ``Answer`` is not a list
                of objects.
        """
        response = await self._client.get(
            self._settings.doh_endpoint,
            params={"name": name, "type": "TXT"},
            headers={"accept": "application/dns-json"},
        )
        if not response.is_success:
            return []
        data = response.json()
        if not isinstance(data, dict) or data.get("Status") != 0:
            return []
        answers = data.get("Answer") or []
        if not isinstance(answers, list) or not all(isinstance(a, dict) for a in answers):
            raise ValueError(f"Malformed DoH answer for {name}")
        return [
            _txt_value(answer["data"])
            for answer in answers
            if answer.get("type") == TXT_RECORD_TYPE and isinstance(answer.get("data"), str)
        ]

    async def resolve_from_dns(self, publisher: str, key_id: str) -> ResolvedKey:
        name = dns_record_name(publisher, key_id)
        try:
            async with asyncio.timeout(self._settings.dns_timeout):
                records = await self.query_dns_txt(name)
        except (TimeoutError, httpx.HTTPError, ValueError) as exc:
            logger.warning("DNS lookup for %s failed: %r", name, exc)
            return ResolvedKey(code=VerifyErrorCode.dns_resolution_failed, source=KeySource.dns)

        for txt in records:
            record = parse_dns_txt_record(txt)
            if record is None:
                continue
            entry = PublicKeyEntry(
                key_id=key_id,
                algorithm="ed25519",
                public_key=record.public_key,
                expires=_iso_from_unix(record.expires),
            )
            return ResolvedKey(
                key=entry, code=check_key_validity(entry, self._now), source=KeySource.dns
            )

        return ResolvedKey(code=VerifyErrorCode.key_not_found, source=KeySource.dns)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_public_key(self, publisher: str, key_id: str) -> ResolvedKey:
        """Race HTTPS against DNS for *key_id*.

        A key that is found but expired or revoked still wins the race; the
        caller sees it together with the lifecycle code.
        """
        if not self._options.dns_enabled:
            return await self.resolve_from_https(publisher, key_id)

        https_task = asyncio.create_task(self.resolve_from_https(publisher, key_id))
        dns_task = asyncio.create_task(self.resolve_from_dns(publisher, key_id))
        winner = await _first_found([https_task, dns_task])
        if winner is not None:
            logger.debug("Resolved %s/%s via %s", publisher, key_id, winner.source)
            return winner
        # Both failed; only the HTTPS reason is surfaced.
        return https_task.result()

    async def candidate_keys(self, publisher: str) -> list[tuple[PublicKeyEntry, KeySource]]:
        """Every currently valid key for signatures that name no keyId.

        HTTPS entries come first; the DNS ``key`` record is added unless its
        public key is already present.
        """

        async def from_https() -> list[PublicKeyEntry]:
            try:
                return await self.fetch_public_keys(publisher)
            except (KeyFetchError, httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
                logger.debug("HTTPS keys for %s unavailable: %s", publisher, exc)
                return []

        async def from_dns() -> ResolvedKey | None:
            if not self._options.dns_enabled:
                return None
            return await self.resolve_from_dns(publisher, DEFAULT_DNS_KEY_ID)

        https_keys, dns_result = await asyncio.gather(from_https(), from_dns())
        candidates = [(key, KeySource.https) for key in https_keys]
        if dns_result is not None and dns_result.key is not None and dns_result.code is None:
            known = {key.public_key for key, _ in candidates}
            if dns_result.key.public_key not in known:
                candidates.append((dns_result.key, KeySource.dns))
        return candidates


# ---------------------------------------------------------------------------
# Module-level entry points
# ---------------------------------------------------------------------------


async def _with_resolver(
    options: VerifyOptions | None, call: Callable[[KeyResolver], Awaitable[T]]
) -> T:
    opts = options or VerifyOptions()
    async with open_client(opts) as client:
        return await call(KeyResolver(client, opts))


async def resolve_public_key(
    publisher: str, key_id: str, options: VerifyOptions | None = None
) -> ResolvedKey:
    return await _with_resolver(options, lambda r: r.resolve_public_key(publisher, key_id))


async def fetch_public_keys(
    publisher: str, options: VerifyOptions | None = None
) -> list[PublicKeyEntry]:
    return await _with_resolver(options, lambda r: r.fetch_public_keys(publisher))


async def fetch_public_key(
    publisher: str, key_id: str, options: VerifyOptions | None = None
) -> PublicKeyEntry | None:
    return await _with_resolver(options, lambda r: r.fetch_public_key(publisher, key_id))


async def validate_signing_key(
    private_key: bytes,
    publisher: str,
    key_id: str | None = None,
    options: VerifyOptions | None = None,
) -> None:
    """Check that *private_key* matches a valid key *publisher* publishes.

    Raises:
        SigningError: if the manifest cannot be fetched, the key is missing,
            expired or revoked, or the private key does not match.
    """
    derived = KeyManager().derive_public_key(private_key)
    derived_b64 = b64encode(derived)
    url = keys_url(publisher)

    try:
        manifest = await _with_resolver(options, lambda r: r.fetch_key_manifest(publisher))
    except (KeyFetchError, httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
        raise SigningError(f"Cannot validate key: failed to fetch {url}: {exc}") from exc

    opts = options or VerifyOptions()
    now = opts.current_time()
    candidates = [k for k in manifest.keys if k.key_id == key_id] if key_id else manifest.keys
    if not candidates:
        raise SigningError(
            f'Key "{key_id}" not found in {publisher}\'s key manifest'
            if key_id
            else f"No keys found in {publisher}'s key manifest"
        )

    for entry in candidates:
        if is_key_valid(entry, now) and _decodes_to(entry.public_key, derived):
            return

    if key_id:
        entry = candidates[0]
        validity = check_key_validity(entry, now)
        if validity is VerifyErrorCode.key_revoked:
            raise SigningError(f'Key "{key_id}" has been revoked by {publisher}')
        if validity is VerifyErrorCode.key_expired:
            raise SigningError(f'Key "{key_id}" has expired ({entry.expires})')
        raise SigningError(
            f"Private key does not match the public key published at {publisher} "
            f'for keyId "{key_id}". Derived: {derived_b64[:16]}..., '
            f"Published: {entry.public_key[:16]}..."
        )
    raise SigningError(
        f"Private key does not match any valid key in {publisher}'s key manifest"
    )


__all__ = [
    "DEFAULT_DNS_KEY_ID",
    "KeyResolver",
    "WELL_KNOWN_PATH",
    "check_key_validity",
    "dns_record_name",
    "fetch_public_key",
    "fetch_public_keys",
    "is_key_valid",
    "keys_url",
    "open_client",
    "parse_dns_txt_record",
    "resolve_public_key",
    "validate_signing_key",
]
