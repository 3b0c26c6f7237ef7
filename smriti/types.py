"""
Data types for the history index.
"""

import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

from .errors import InvalidURLError
from .tokenizer import tokenize_fields


def utc_now_ms() -> int:
    """Current time as integer milliseconds since the Unix epoch.

    All visit timestamps in smriti use this unit, matching what browser
    history APIs report for lastVisitTime.
    """
    return int(time.time() * 1000)


# Browsers accept URLs up to 2 MiB; anything longer is not a history entry.
MAX_URL_LENGTH = 2 * 1024 * 1024

# Scheme per RFC 3986: ALPHA *( ALPHA / DIGIT / "+" / "-" / "." ) ":"
_SCHEME_RE = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.-]*:')

# Raw whitespace and control characters never appear in a serialized URL
_URL_BLOCKED_RE = re.compile(r'[\x00-\x20\x7f]')

# Schemes that must carry a host
_HOST_SCHEMES = frozenset({"http", "https", "ftp", "ws", "wss"})


def derive_hostname(url: str) -> str:
    """Return the hostname of a URL, or raise InvalidURLError.

    Schemes without an authority (about:, data:, file:///...) yield an
    empty hostname rather than an error.
    """
    if not isinstance(url, str) or not url:
        raise InvalidURLError("URL must be a non-empty string")
    if len(url) > MAX_URL_LENGTH:
        raise InvalidURLError(f"URL longer than {MAX_URL_LENGTH} characters")
    if _URL_BLOCKED_RE.search(url):
        raise InvalidURLError(f"URL contains whitespace or control characters: {url!r}")
    if not _SCHEME_RE.match(url):
        raise InvalidURLError(f"URL has no scheme: {url!r}")
    try:
        parsed = urlsplit(url)
        host = parsed.hostname or ""
        parsed.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise InvalidURLError(f"Unparseable URL {url!r}: {e}") from e
    if parsed.scheme.lower() in _HOST_SCHEMES and not host:
        raise InvalidURLError(f"URL has no host: {url!r}")
    return host


# ---------------------------------------------------------------------------
# URL canonicalization: RFC 3986 §6.2.2 syntax-based normalization
# ---------------------------------------------------------------------------

_UNRESERVED = frozenset(
    'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~'
)
_DEFAULT_PORTS = {'http': 80, 'https': 443}


def _decode_unreserved(s: str) -> str:
    """Decode percent-encoded unreserved characters (RFC 3986 §2.3).

    Only decodes %XX where the decoded char is unreserved (letters, digits,
    ``-._~``). Reserved percent-encodings are kept with uppercase hex digits.
    """
    if '%' not in s:
        return s
    result: list[str] = []
    i = 0
    while i < len(s):
        if s[i] == '%' and i + 3 <= len(s):
            hex_str = s[i + 1:i + 3]
            try:
                char = chr(int(hex_str, 16))
                if char in _UNRESERVED:
                    result.append(char)
                else:
                    result.append(f'%{hex_str.upper()}')
                i += 3
                continue
            except ValueError:
                pass
        result.append(s[i])
        i += 1
    return ''.join(result)


def _resolve_dot_segments(path: str) -> str:
    """Remove dot segments from a URI path (RFC 3986 §5.2.4)."""
    output: list[str] = []
    for seg in path.split('/'):
        if seg == '.':
            continue
        elif seg == '..':
            if output and output[-1] != '':
                output.pop()
        else:
            output.append(seg)
    resolved = '/'.join(output)
    if path.startswith('/') and not resolved.startswith('/'):
        resolved = '/' + resolved
    return resolved


def canonicalize_url(url: str) -> str:
    """Apply safe syntax normalization to an HTTP/HTTPS URL.

    Lowercases scheme and host, drops the default port, resolves dot
    segments and decodes percent-encoded unreserved characters, so that
    equivalent URLs map to the same item. Other schemes are returned
    unchanged. Raises InvalidURLError for unparseable URLs.
    """
    derive_hostname(url)
    if not url[:8].lower().startswith(('http://', 'https://')):
        return url

    parsed = urlsplit(url)
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or '').lower()
    if ':' in host:
        host = f'[{host}]'

    port = parsed.port
    if port and port == _DEFAULT_PORTS.get(scheme):
        port = None
    netloc = f'{host}:{port}' if port else host
    if parsed.username:
        userinfo = parsed.username
        if parsed.password:
            userinfo += f':{parsed.password}'
        netloc = f'{userinfo}@{netloc}'

    path = _resolve_dot_segments(_decode_unreserved(parsed.path))
    if not path:
        path = '/'

    query = _decode_unreserved(parsed.query)
    fragment = _decode_unreserved(parsed.fragment)

    return urlunsplit((scheme, netloc, path, query, fragment))


def _as_int(value: Any, default: Optional[int]) -> Optional[int]:
    """Coerce a host-supplied number (int, float, numeric string) to int."""
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


# ---------------------------------------------------------------------------
# Indexed items
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IndexedItem:
    """
    The per-URL record held by the index.

    Items are immutable snapshots. Merges produce new items through
    evolve(), which always re-derives tokens from the textual fields.

    Attributes:
        url: Natural key, never changes once created
        title: Last-seen page title
        hostname: Derived from url
        meta_description: Page description from metadata capture, None until captured
        meta_keywords: Keywords from metadata capture, set semantics, first-seen order
        visit_count: Number of visits, at least 1, never decreases
        last_visit: Most recent visit in epoch milliseconds, never decreases
        tokens: Tokenizer output over title, url, description and keywords
    """
    url: str
    title: str = ""
    hostname: str = ""
    meta_description: Optional[str] = None
    meta_keywords: tuple[str, ...] = ()
    visit_count: int = 1
    last_visit: int = 0
    tokens: tuple[str, ...] = field(default=(), compare=False)

    def __post_init__(self):
        if not isinstance(self.meta_keywords, tuple):
            object.__setattr__(self, "meta_keywords", tuple(self.meta_keywords))
        if not self.tokens:
            object.__setattr__(self, "tokens", tuple(self.derive_tokens()))
        elif not isinstance(self.tokens, tuple):
            object.__setattr__(self, "tokens", tuple(self.tokens))

    def derive_tokens(self) -> list[str]:
        """Tokens as a pure function of the current textual fields."""
        return tokenize_fields(
            self.title,
            self.url,
            self.meta_description,
            " ".join(self.meta_keywords),
        )

    def evolve(self, **changes) -> "IndexedItem":
        """Return a copy with fields changed and tokens recomputed in full."""
        if "url" in changes and changes["url"] != self.url:
            raise ValueError("IndexedItem.url is immutable")
        return replace(self, **changes, tokens=())

    def to_dict(self) -> dict:
        """Wire form used on the request/response boundary."""
        return {
            "url": self.url,
            "title": self.title,
            "hostname": self.hostname,
            "metaDescription": self.meta_description,
            "metaKeywords": list(self.meta_keywords),
            "visitCount": self.visit_count,
            "lastVisit": self.last_visit,
            "tokens": list(self.tokens),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "IndexedItem":
        """Inverse of to_dict(). Tokens are re-derived, not trusted."""
        return cls(
            url=d["url"],
            title=d.get("title") or "",
            hostname=d.get("hostname") or "",
            meta_description=d.get("metaDescription"),
            meta_keywords=tuple(d.get("metaKeywords") or ()),
            visit_count=_as_int(d.get("visitCount"), 1),
            last_visit=_as_int(d.get("lastVisit"), 0),
        )

    def __str__(self) -> str:
        return f"{self.url}: {self.title[:60]}"


@dataclass(frozen=True)
class HistoryRecord:
    """One row returned by a history source query."""
    url: str
    title: str = ""
    visit_count: int = 1
    last_visit_time: Optional[int] = None  # epoch ms

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "HistoryRecord":
        """Build from a browser-style row (camelCase or snake_case keys)."""
        url = row.get("url")
        title = row.get("title")
        count = row.get("visitCount", row.get("visit_count"))
        last_visit = row.get("lastVisitTime", row.get("last_visit_time"))
        return cls(
            url=url if isinstance(url, str) else "",
            title=str(title) if title is not None else "",
            visit_count=_as_int(count, 1) or 1,
            last_visit_time=_as_int(last_visit, None),
        )


@dataclass(frozen=True)
class VisitEvent:
    """A single new-visit notification from the history source."""
    url: str
    title: str = ""
    time: Optional[int] = None  # epoch ms

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "VisitEvent":
        return cls(
            url=row.get("url") or "",
            title=row.get("title") or "",
            time=_as_int(row.get("time", row.get("lastVisitTime")), None),
        )


@dataclass(frozen=True)
class IngestionState:
    """
    Persisted first-run bookkeeping owned by the ingestion coordinator.

    indexed_once is False until a full bulk ingest has completed.
    last_indexed_version records the engine version that did it, so an
    upgrade can trigger a fresh pass.
    """
    last_indexed_version: Optional[str] = None
    indexed_once: bool = False
    last_ingest_at: Optional[int] = None  # epoch ms of last successful pass

    def to_dict(self) -> dict:
        return {
            "lastIndexedVersion": self.last_indexed_version,
            "indexedOnce": self.indexed_once,
            "lastIngestAt": self.last_ingest_at,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "IngestionState":
        return cls(
            last_indexed_version=d.get("lastIndexedVersion"),
            indexed_once=bool(d.get("indexedOnce", False)),
            last_ingest_at=_as_int(d.get("lastIngestAt"), None),
        )
