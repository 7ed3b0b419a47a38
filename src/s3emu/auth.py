"""AWS request signature verification for s3emu.

Two signing schemes are understood, each in a header and a query-string
(presigned) flavour:

    - legacy (signature version 2): HMAC-SHA1 over a canonical string,
      base64 encoded
    - v4: HMAC-SHA256 over a canonical request with a derived signing key,
      hex encoded

The scheme is picked per request from the shape of the ``Authorization``
header or the query parameters (see ``detect_scheme``). Verification
computes every candidate signature the client may legitimately have
produced (path as received and with the legacy mount prefix stripped)
and accepts if the claimed signature is one of them.

References:
    - https://docs.aws.amazon.com/AmazonS3/latest/userguide/RESTAuthentication.html
    - https://docs.aws.amazon.com/AmazonS3/latest/API/sig-v4-authenticating-requests.html
"""

import base64
import enum
import hashlib
import hmac
import logging
import re
import urllib.parse
from dataclasses import dataclass, field

from s3emu.errors import AccessDenied, SignatureDoesNotMatch

logger = logging.getLogger(__name__)

# Constants
ALGORITHM = "AWS4-HMAC-SHA256"
KEY_PREFIX = "AWS4"
SCOPE_TERMINATOR = "aws4_request"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
STREAMING_PAYLOAD = "STREAMING-AWS4-HMAC-SHA256-PAYLOAD"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
BYPASS_PARAM = "noAuth"

LEGACY_AUTH_RE = re.compile(r"AWS ([^:]+):(.*)")
V4_AUTH_RE = re.compile(
    r"AWS4-HMAC-SHA256\s+"
    r"Credential=(?P<key>[^/]+)/(?P<date>[^/]+)/(?P<region>[^/]+)/(?P<service>[^/]+)/aws4_request,\s*"
    r"SignedHeaders=(?P<signed_headers>[^,]+),\s*"
    r"Signature=(?P<signature>\S+)"
)
V4_CREDENTIAL_RE = re.compile(
    r"(?P<key>[^/]+)/(?P<date>[^/]+)/(?P<region>[^/]+)/(?P<service>[^/]+)/aws4_request"
)

# Sub-resources that take part in the legacy string to sign.
LEGACY_SIGNED_PARAMETERS = frozenset(
    [
        "acl",
        "torrent",
        "logging",
        "location",
        "policy",
        "requestPayment",
        "versioning",
        "versions",
        "versionId",
        "notification",
        "uploadId",
        "uploads",
        "partNumber",
        "website",
        "delete",
        "lifecycle",
        "tagging",
        "cors",
        "restore",
        "response-content-type",
        "response-content-language",
        "response-expires",
        "response-cache-control",
        "response-content-disposition",
        "response-content-encoding",
    ]
)


class Scheme(enum.Enum):
    """How a request claims to be signed."""

    NONE = "none"
    LEGACY_HEADER = "legacy-header"
    LEGACY_QUERY = "legacy-query"
    V4_HEADER = "v4-header"
    V4_QUERY = "v4-query"


@dataclass
class SignedRequest:
    """The parts of an HTTP request that signatures cover.

    Attributes:
        method: HTTP method (uppercase).
        path: The path as received, still percent-encoded.
        query: Decoded query parameters in arrival order.
        headers: Header name/value pairs; names are matched case-insensitively.
        body_sha256: Hex SHA-256 of the body, if the caller already knows it.
    """

    method: str
    path: str
    query: list[tuple[str, str]] = field(default_factory=list)
    headers: list[tuple[str, str]] = field(default_factory=list)
    body_sha256: str | None = None

    def header(self, name: str, default: str | None = None) -> str | None:
        values = self.header_values(name)
        return ",".join(values) if values else default

    def header_values(self, name: str) -> list[str]:
        lname = name.lower()
        return [v for n, v in self.headers if n.lower() == lname]

    def param(self, name: str, default: str | None = None) -> str | None:
        for n, v in self.query:
            if n == name:
                return v
        return default

    def has_param(self, name: str) -> bool:
        return any(n == name for n, _ in self.query)


def detect_scheme(request: SignedRequest) -> Scheme:
    """Pick the signing scheme from the request's shape."""
    authorization = request.header("authorization", "") or ""
    if V4_AUTH_RE.match(authorization):
        return Scheme.V4_HEADER
    if (request.param("X-Amz-Algorithm") or "").upper() == ALGORITHM:
        return Scheme.V4_QUERY
    if LEGACY_AUTH_RE.match(authorization):
        return Scheme.LEGACY_HEADER
    if request.param("Signature"):
        return Scheme.LEGACY_QUERY
    return Scheme.NONE


def claimed_signature(request: SignedRequest, scheme: Scheme) -> str | None:
    """Extract the signature the client supplied, if any."""
    authorization = request.header("authorization", "") or ""
    if scheme is Scheme.V4_HEADER:
        return V4_AUTH_RE.match(authorization).group("signature")
    if scheme is Scheme.V4_QUERY:
        return request.param("X-Amz-Signature")
    if scheme is Scheme.LEGACY_HEADER:
        return LEGACY_AUTH_RE.match(authorization).group(2)
    if scheme is Scheme.LEGACY_QUERY:
        return request.param("Signature")
    return None


# ---------------------------------------------------------------------------
# Legacy (signature version 2)
# ---------------------------------------------------------------------------


def _amz_header_lines(request: SignedRequest, skip_date: bool) -> list[str]:
    grouped: dict[str, list[str]] = {}
    for name, value in request.headers:
        lname = name.lower().strip()
        if not lname.startswith("x-amz-"):
            continue
        if skip_date and lname == "x-amz-date":
            continue
        grouped.setdefault(lname, []).append(value)
    return sorted(f"{name}:{','.join(values).strip()}" for name, values in grouped.items())


def _legacy_subresources(request: SignedRequest) -> str:
    parts = []
    for name in sorted({n for n, _ in request.query if n in LEGACY_SIGNED_PARAMETERS}):
        value = request.param(name) or ""
        parts.append(f"{name}={value}" if value else name)
    return "?" + "&".join(parts) if parts else ""


def legacy_string_to_sign(request: SignedRequest, path: str, date_in_headers: bool = True) -> str:
    """Build the legacy canonical string.

    Args:
        request: The request.
        path: The resource path to sign.
        date_in_headers: With ``x-amz-date`` present, AWS leaves the date
            line empty and signs x-amz-date among the ``x-amz-*`` headers.
            When False, x-amz-date fills the date line instead and is left
            out of the header lines.
    """
    amz_date = request.header("x-amz-date")
    if amz_date is None:
        date_line = request.param("Expires") or request.header("date", "") or ""
    elif date_in_headers:
        date_line = ""
    else:
        date_line = amz_date

    lines = [
        request.method,
        request.header("content-md5", "") or "",
        request.header("content-type", "") or "",
        date_line,
    ]
    lines.extend(_amz_header_lines(request, skip_date=amz_date is not None and not date_in_headers))
    return "\n".join(lines) + "\n" + path + _legacy_subresources(request)


def legacy_signature(secret_key: str, string_to_sign: str) -> str:
    """Compute the base64 HMAC-SHA1 signature."""
    digest = hmac.new(
        secret_key.encode("utf-8"), string_to_sign.encode("utf-8"), hashlib.sha1
    ).digest()
    return base64.b64encode(digest).decode("ascii")


# ---------------------------------------------------------------------------
# V4
# ---------------------------------------------------------------------------


def derive_signing_key(secret_key: str, date: str, region: str, service: str) -> bytes:
    """Derive the SigV4 signing key via the HMAC-SHA256 chain.

    Args:
        secret_key: The secret access key.
        date: Date string (YYYYMMDD).
        region: AWS region.
        service: AWS service name.

    Returns:
        The 32-byte signing key.
    """
    k_date = hmac.new(
        (KEY_PREFIX + secret_key).encode("utf-8"),
        date.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    k_region = hmac.new(k_date, region.encode("utf-8"), hashlib.sha256).digest()
    k_service = hmac.new(k_region, service.encode("utf-8"), hashlib.sha256).digest()
    return hmac.new(k_service, SCOPE_TERMINATOR.encode("utf-8"), hashlib.sha256).digest()


def _uri_encode(s: str, encode_slash: bool = True) -> str:
    """RFC 3986 encoding: only A-Z, a-z, 0-9, '-', '_', '.', '~' stay as-is."""
    safe = "-_.~" if encode_slash else "-_.~/"
    return urllib.parse.quote(s, safe=safe)


def _uri_encode_path(path: str) -> str:
    """URI-encode each segment of a decoded path, keeping the slashes."""
    if not path:
        return "/"
    result = "/".join(_uri_encode(seg, encode_slash=False) for seg in path.split("/"))
    if not result.startswith("/"):
        result = "/" + result
    return result


def canonical_query_string(query: list[tuple[str, str]], skip_signature: bool = False) -> str:
    """Sort and RFC 3986 encode decoded query parameters."""
    params = [
        (name, value)
        for name, value in query
        if not (skip_signature and name == "X-Amz-Signature")
    ]
    params.sort()
    return "&".join(f"{_uri_encode(n)}={_uri_encode(v)}" for n, v in params)


def _trim_header_value(value: str) -> str:
    """Strip and collapse sequential spaces, as canonical headers require."""
    return re.sub(r" +", " ", value.strip())


def v4_canonical_request(
    request: SignedRequest,
    canonical_uri: str,
    signed_headers: list[str],
    payload_hash: str,
    presigned: bool,
) -> str:
    """Build the canonical request string."""
    header_lines = []
    for name in sorted(signed_headers):
        values = [_trim_header_value(v) for v in request.header_values(name)]
        header_lines.append(f"{name}:{','.join(values)}\n")
    return "\n".join(
        [
            request.method,
            canonical_uri,
            canonical_query_string(request.query, skip_signature=presigned),
            "".join(header_lines),
            ";".join(sorted(signed_headers)),
            payload_hash,
        ]
    )


def v4_string_to_sign(timestamp: str, scope: str, canonical_request: str) -> str:
    canonical_hash = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    return f"{ALGORITHM}\n{timestamp}\n{scope}\n{canonical_hash}"


def v4_payload_hash(request: SignedRequest, presigned: bool) -> str:
    if presigned:
        return UNSIGNED_PAYLOAD
    declared = request.header("x-amz-content-sha256")
    if declared:
        return declared
    return request.body_sha256 or EMPTY_SHA256


# ---------------------------------------------------------------------------
# Authenticator
# ---------------------------------------------------------------------------


class RequestAuthenticator:
    """Computes and checks request signatures against one shared secret.

    Attributes:
        secret_key: The shared secret used by both schemes.
        legacy_prefix: Legacy mount point (e.g. "/s3") that clients may or
            may not have included in the signed path.
    """

    def __init__(self, secret_key: str, legacy_prefix: str = "/s3") -> None:
        self.secret_key = secret_key
        self.legacy_prefix = legacy_prefix.rstrip("/")
        self._signing_key_cache: dict[tuple[str, str, str], bytes] = {}

    def path_variants(self, path: str) -> list[str]:
        """The received path and, if it carries the legacy prefix, the stripped one."""
        variants = [path or "/"]
        prefix = self.legacy_prefix
        if prefix and (path == prefix or path.startswith(prefix + "/")):
            variants.append(path[len(prefix) :] or "/")
        return variants

    def compute_signatures(self, request: SignedRequest, scheme: Scheme | None = None) -> set[str]:
        """Return every signature that would authenticate this request.

        Raises:
            AccessDenied: If a v4 credential is malformed.
        """
        scheme = scheme or detect_scheme(request)
        if scheme in (Scheme.LEGACY_HEADER, Scheme.LEGACY_QUERY):
            return self._legacy_signatures(request)
        if scheme in (Scheme.V4_HEADER, Scheme.V4_QUERY):
            return self._v4_signatures(request, presigned=scheme is Scheme.V4_QUERY)
        return set()

    def verify(self, request: SignedRequest) -> Scheme:
        """Check the request's claimed signature.

        Returns:
            The detected scheme (``Scheme.NONE`` for unsigned requests).

        Raises:
            SignatureDoesNotMatch: If a signature is present but wrong.
        """
        scheme = detect_scheme(request)
        if scheme is Scheme.NONE:
            return scheme
        claimed = claimed_signature(request, scheme) or ""
        candidates = self.compute_signatures(request, scheme)
        claimed_bytes = claimed.encode("utf-8")
        if not any(hmac.compare_digest(c.encode("utf-8"), claimed_bytes) for c in candidates):
            logger.debug("Signature mismatch for %s %s (%s)", request.method, request.path, scheme.value)
            raise SignatureDoesNotMatch()
        return scheme

    def authorize(self, request: SignedRequest, bucket_is_public: bool) -> Scheme:
        """Decide whether a bucket- or object-level request may proceed.

        A supplied signature must always match. Without one, the request
        is only allowed on a public bucket or with the ``noAuth`` flag.

        Raises:
            SignatureDoesNotMatch: If a signature is present but wrong.
            AccessDenied: If the request is unsigned and the bucket is private.
        """
        scheme = self.verify(request)
        if scheme is Scheme.NONE and not bucket_is_public and not request.has_param(BYPASS_PARAM):
            raise AccessDenied("Authentication required")
        return scheme

    def _legacy_signatures(self, request: SignedRequest) -> set[str]:
        conventions = [True]
        if request.header("x-amz-date") is not None:
            conventions.append(False)
        return {
            legacy_signature(self.secret_key, legacy_string_to_sign(request, path, convention))
            for path in self.path_variants(request.path)
            for convention in conventions
        }

    def _signing_key(self, date: str, region: str, service: str) -> bytes:
        cache_key = (date, region, service)
        cached = self._signing_key_cache.get(cache_key)
        if cached is None:
            if len(self._signing_key_cache) > 100:
                self._signing_key_cache.clear()
            cached = derive_signing_key(self.secret_key, date, region, service)
            self._signing_key_cache[cache_key] = cached
        return cached

    def _v4_signatures(self, request: SignedRequest, presigned: bool) -> set[str]:
        if presigned:
            match = V4_CREDENTIAL_RE.fullmatch(request.param("X-Amz-Credential") or "")
            signed_headers = request.param("X-Amz-SignedHeaders") or ""
        else:
            match = V4_AUTH_RE.match(request.header("authorization", "") or "")
            signed_headers = match.group("signed_headers") if match else ""
        if match is None:
            raise AccessDenied("Invalid Credential format.")

        date = match.group("date")
        region = match.group("region")
        service = match.group("service")
        scope = f"{date}/{region}/{service}/{SCOPE_TERMINATOR}"
        timestamp = request.header("x-amz-date") or request.param("X-Amz-Date") or ""
        header_names = [h.strip().lower() for h in signed_headers.split(";") if h.strip()]
        payload_hash = v4_payload_hash(request, presigned)
        signing_key = self._signing_key(date, region, service)

        signatures = set()
        for path in self.path_variants(request.path):
            decoded = urllib.parse.unquote(path)
            for canonical_uri in {path, _uri_encode_path(decoded)}:
                canonical = v4_canonical_request(
                    request, canonical_uri, header_names, payload_hash, presigned
                )
                string_to_sign = v4_string_to_sign(timestamp, scope, canonical)
                signatures.add(
                    hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
                )
        return signatures
