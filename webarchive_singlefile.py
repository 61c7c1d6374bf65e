#!/usr/bin/env python3
import argparse
import base64
import codecs
import email
import glob
import html
import logging
import mimetypes
import os
import plistlib
import re
import shutil
import socket
import ssl
import subprocess
import sys
import tempfile
import threading
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from email.errors import MissingHeaderBodySeparatorDefect
from email.message import Message
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from threading import Lock
from typing import (
    BinaryIO,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)
from urllib.parse import urljoin, urlsplit, urlunsplit
from xml.parsers.expat import ExpatError

import requests
import urllib3
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from requests.utils import DEFAULT_ACCEPT_ENCODING
from urllib3.util.retry import Retry

__version__ = "0.1.0"

# -------------------- Config --------------------

# Some origins refuse requests that do not look like a desktop browser.
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/95.0.4638.69 Safari/537.36"
)
DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.7",
}
DEFAULT_CONTENT_TYPE = "text/html; charset=utf-8"
MAX_MULTIPART_DEPTH = 32
CHUNK_SIZE = 64 * 1024
BROWSER_LAUNCH_TIMEOUT_MS = 60_000

INPUT_PATTERNS = ("*.webarchive", "*.mhtml", "*.mht")
MHTML_SUFFIXES = {".mhtml", ".mht"}

CSS_URL_RE = re.compile(r"url\((.+?)\)", re.IGNORECASE)
MEDIA_TYPE_RE = re.compile(r"^[\w!#$&^.+-]+/[\w!#$&^.+-]+$")
# left behind by serializers that escape quotes inside style attributes
QUOTE_ENTITIES = ("&#34;", "&quot;")

LINK_RELS = {"stylesheet", "icon", "shortcut icon", "shortcut", "apple-touch-icon"}
TEXT_MIME_TYPES = {
    "application/javascript",
    "application/json",
    "application/xhtml+xml",
    "application/xml",
    "image/svg+xml",
}
HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# (selector, first match only)
SITE_CLEANUPS: Dict[str, Tuple[Tuple[str, bool], ...]] = {
    "telegra.ph": (
        ("div#_tl_link_tooltip", False),
        ("div#_tl_tooltip", False),
        ("div#_tl_blocks", False),
        ("header", False),
        ("aside", False),
        ("article h1", True),
    ),
}

SCROLL_JS = """async (ms) => {
  const root = document.scrollingElement || document.documentElement;
  const steps = Math.max(1, Math.floor(ms / 100));
  for (let i = 1; i <= steps; i++) {
    window.scrollTo(0, root.scrollHeight * i / steps);
    await new Promise((r) => setTimeout(r, 100));
  }
}"""

# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = 60.0
    fetch_missing: bool = True
    user_agent: str = USER_AGENT

    # Rendering
    render: bool = True
    snapshot: bool = False
    headless: bool = True
    render_timeout_ms: int = 60000
    settle_seconds: float = 5.0
    scroll_ms: int = 4000

    # Capture proxy
    proxy_host: str = "127.0.0.1"
    proxy_port: int = 0
    capture_wait: float = 10.0
    capture_workers: int = 8
    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None

    # Output
    decorate: bool = False
    output_dir: Optional[str] = None


# -------------------- Errors --------------------


class SinglefileError(Exception):
    """Base error for a single input that cannot be converted."""


class FormatError(SinglefileError):
    """The input does not parse as a .webarchive property list or MIME snapshot."""


class MissingBoundaryError(FormatError):
    def __init__(self, content_type: str = ""):
        super().__init__(
            f"no boundary found for multipart entity ({content_type.strip()})"
        )
        self.content_type = content_type


class ParseError(SinglefileError):
    """The markup cannot be parsed."""


class NetworkFetchError(SinglefileError):
    def __init__(self, url: str, reason: str):
        super().__init__(f"cannot fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class UnresolvedReferenceWarning(UserWarning):
    """A reference was left as-is because nothing could be found for it."""


# -------------------- Utils --------------------


def mime_essence(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def charset_of(content_type: Optional[str]) -> str:
    for param in (content_type or "").split(";")[1:]:
        k, _, v = param.partition("=")
        if k.strip().lower() == "charset":
            return v.strip().strip("\"'")
    return ""


def guess_mime(url: str) -> str:
    try:
        path = urlsplit(url).path
    except ValueError:
        path = url
    return mimetypes.guess_type(path)[0] or "application/octet-stream"


def encode_data_uri(data: bytes, mime: str) -> str:
    payload = base64.b64encode(data).decode("ascii")
    return f"data:{mime or 'application/octet-stream'};base64,{payload}"


def decode_text(data: bytes, encoding: str = "") -> Tuple[str, str]:
    codec = encoding or "utf-8"
    try:
        codecs.lookup(codec)
    except LookupError:
        codec = "utf-8"
    return data.decode(codec, errors="replace"), codec


def relative_ref(ref: str) -> str:
    if ref.startswith("data:"):
        return ref
    try:
        p = urlsplit(ref)
    except ValueError:
        return ref
    return urlunsplit(("", "", p.path, p.query, p.fragment))


def _is_network_scheme(scheme: str) -> bool:
    return scheme in ("", "http", "https")


def absolute_ref(ref: str, base: str) -> str:
    if ref.startswith("data:") or not base:
        return ref
    try:
        p = urlsplit(ref)
    except ValueError:
        return ref
    if (p.scheme and p.netloc) or not _is_network_scheme(p.scheme):
        return ref
    return urljoin(base, ref)


def complete_ref(ref: str, base: str) -> str:
    """Fill an empty scheme and host of ``ref`` from ``base``; the path is kept."""
    if ref.startswith("data:") or not base:
        return ref
    try:
        p = urlsplit(ref)
        b = urlsplit(base)
    except ValueError:
        return ref
    if (p.scheme and p.netloc) or not _is_network_scheme(p.scheme):
        return ref
    netloc = p.netloc or b.netloc
    path = p.path
    if netloc and path and not path.startswith("/"):
        path = "/" + path
    return urlunsplit((p.scheme or b.scheme, netloc, path, p.query, p.fragment))


def build_session(user_agent: str = USER_AGENT) -> requests.Session:
    s = requests.Session()
    # a missing reference is fetched once; no retries
    retry = Retry(total=0, raise_on_status=False)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    s.headers["User-Agent"] = user_agent
    return s


def atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


# -------------------- Resources --------------------


@dataclass
class Resource:
    mime_type: str = ""
    url: str = ""
    data: bytes = b""
    text_encoding: str = ""
    frame_name: str = ""
    _data_uri: Optional[str] = field(default=None, init=False, repr=False, compare=False)

    @classmethod
    def from_plist(cls, record: Mapping) -> "Resource":
        data = record.get("WebResourceData") or b""
        if isinstance(data, str):
            data = data.encode("utf-8")
        return cls(
            mime_type=mime_essence(record.get("WebResourceMIMEType")),
            url=record.get("WebResourceURL") or "",
            data=bytes(data),
            text_encoding=record.get("WebResourceTextEncodingName") or "",
            frame_name=record.get("WebResourceFrameName") or "",
        )

    def reset_data(self, data: bytes) -> None:
        self.data = data
        self._data_uri = None

    def data_uri(self) -> str:
        if self._data_uri is None:
            mime = self.mime_type or guess_mime(self.url)
            if self.text_encoding and (
                mime.startswith("text/") or mime in TEXT_MIME_TYPES
            ):
                mime = f"{mime};charset={self.text_encoding}"
            self._data_uri = encode_data_uri(self.data, mime)
        return self._data_uri


@dataclass
class Part(Resource):
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)

    @property
    def content_location(self) -> str:
        return (self.headers.get("Content-Location") or "").strip()

    @property
    def content_id(self) -> str:
        return (self.headers.get("Content-ID") or "").strip().strip("<>")


# -------------------- Resource table --------------------


class ResourceTable:
    """Alias -> blob map shared by the readers, the resolver and the proxy.

    Blobs live in an arena and every alias points at one arena slot, so a part
    known under its cid, relative and absolute forms is stored once. The first
    writer of a key wins; later writers only fill keys that are still missing.
    ``seed`` is called once, under the lock, on first access.
    """

    def __init__(
        self, seed: Optional[Callable[[], Iterable[Tuple[str, Resource]]]] = None
    ):
        self._lock = Lock()
        self._seed = seed
        self._blobs: Optional[List[Resource]] = None
        self._slots: Dict[int, int] = {}
        self._aliases: Dict[str, int] = {}

    def _ensure(self) -> List[Resource]:
        if self._blobs is None:
            self._blobs = []
            seed, self._seed = self._seed, None
            if seed is not None:
                for key, res in seed():
                    self._bind(key, res)
        return self._blobs

    def _bind(self, key: str, res: Resource) -> bool:
        if not key or key in self._aliases:
            return False
        blobs = self._ensure()
        slot = self._slots.get(id(res))
        if slot is None:
            slot = len(blobs)
            blobs.append(res)
            self._slots[id(res)] = slot
        self._aliases[key] = slot
        return True

    def add(self, resource: Resource, *keys: str) -> int:
        added = 0
        with self._lock:
            self._ensure()
            for key in keys:
                if self._bind(key, resource):
                    added += 1
        return added

    def get(self, key: str) -> Optional[Resource]:
        with self._lock:
            blobs = self._ensure()
            slot = self._aliases.get(key)
            return None if slot is None else blobs[slot]

    def lookup(self, *keys: str) -> Optional[Resource]:
        with self._lock:
            blobs = self._ensure()
            for key in keys:
                slot = self._aliases.get(key)
                if slot is not None:
                    return blobs[slot]
        return None

    def reset_data(self, resource: Resource, data: bytes) -> None:
        with self._lock:
            resource.reset_data(data)

    def resources(self) -> List[Resource]:
        with self._lock:
            return list(self._ensure())

    def __contains__(self, key: object) -> bool:
        with self._lock:
            self._ensure()
            return key in self._aliases

    def __len__(self) -> int:
        with self._lock:
            self._ensure()
            return len(self._aliases)


# -------------------- WebArchive bundles --------------------


@dataclass
class Bundle:
    main: Resource
    subresources: List[Resource] = field(default_factory=list)
    subframes: List["Bundle"] = field(default_factory=list)
    table: ResourceTable = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.table = ResourceTable(seed=self._seed)

    @classmethod
    def from_plist(cls, data: object) -> "Bundle":
        if not isinstance(data, dict):
            raise FormatError("top-level object is not a dictionary")
        main = data.get("WebMainResource")
        if not isinstance(main, dict) or not main.get("WebResourceURL"):
            raise FormatError("missing WebMainResource URL")
        subs: List[Resource] = []
        for rec in data.get("WebSubresources") or []:
            if not isinstance(rec, dict) or not rec.get("WebResourceURL"):
                logging.warning("skip subresource without URL")
                continue
            subs.append(Resource.from_plist(rec))
        frames = [cls.from_plist(f) for f in data.get("WebSubframeArchives") or []]
        return cls(Resource.from_plist(main), subs, frames)

    @property
    def url(self) -> str:
        return self.main.url

    def _seed(self) -> Iterator[Tuple[str, Resource]]:
        # container URLs are already absolute: literal keys only
        for res in self.subresources:
            yield res.url, res
        yield self.main.url, self.main
        for frame in self.subframes:
            yield from frame._seed()

    def resolve(self, literal_url: str) -> Tuple[Optional[Resource], bool]:
        res = self.table.get(literal_url)
        return res, res is not None

    def complete(self, ref: str) -> str:
        return complete_ref(ref, self.main.url)

    def resources(self) -> List[Resource]:
        return self.table.resources()


def load_webarchive(path: Union[str, os.PathLike]) -> Bundle:
    try:
        with open(path, "rb") as f:
            data = plistlib.load(f)
    except (OSError, ValueError, ExpatError) as e:
        raise FormatError(f"cannot parse {path}: {e}") from e
    return Bundle.from_plist(data)


# -------------------- MHTML snapshots --------------------


def _content_type(msg: Message) -> Tuple[str, str]:
    raw = msg.get("Content-Type") or DEFAULT_CONTENT_TYPE
    mime = mime_essence(raw)
    if not MEDIA_TYPE_RE.match(mime):
        raise FormatError(f"invalid media type {raw!r}")
    return mime, raw


def decode_parts(msg: Message, depth: int = 0) -> List[Part]:
    """Flatten a MIME tree into its leaf parts, in document order."""
    if depth > MAX_MULTIPART_DEPTH:
        raise FormatError(f"multipart nesting deeper than {MAX_MULTIPART_DEPTH}")
    mime, raw = _content_type(msg)
    if mime.startswith("multipart/"):
        if not msg.get_param("boundary"):
            raise MissingBoundaryError(raw)
        children = msg.get_payload()
        if not isinstance(children, list):
            raise FormatError(f"multipart entity without parts ({raw.strip()})")
        parts: List[Part] = []
        for child in children:
            parts.extend(decode_parts(child, depth + 1))
        return parts

    headers = CaseInsensitiveDict(msg.items())
    headers.setdefault("Content-Type", raw)
    # base64 and quoted-printable are decoded, anything else is copied verbatim
    body = msg.get_payload(decode=True)
    part = Part(
        mime_type=mime,
        data=body if isinstance(body, bytes) else b"",
        text_encoding=charset_of(raw),
        headers=headers,
    )
    part.url = part.content_location
    return [part]


class Snapshot:
    def __init__(self, parts: List[Part], url: str = "", start: str = ""):
        self.parts = parts
        self.url = url
        self.table = ResourceTable()
        for part in parts:
            self._register(part)
        self.root = self._find_root(start)
        if not self.url:
            self.url = self.root.content_location

    def _register(self, part: Part) -> None:
        loc = part.content_location
        if loc.startswith("cid:"):
            self.table.add(part, loc)
            return
        if loc.startswith("data:"):
            return
        if loc:
            self.table.add(part, relative_ref(loc), absolute_ref(loc, self.url))
        if part.content_id:
            self.table.add(part, "cid:" + part.content_id)

    def _find_root(self, start: str) -> Part:
        root = self.table.get(self.url) if self.url else None
        if root is None and start:
            root = self.table.get("cid:" + start.strip().strip("<>"))
        if root is None:
            root = next(
                (
                    p
                    for p in self.parts
                    if p.mime_type in ("text/html", "application/xhtml+xml")
                ),
                None,
            )
        if not isinstance(root, Part):
            raise FormatError("snapshot has no root document")
        return root

    @property
    def html(self) -> bytes:
        return self.root.data

    def merge_table(self, table: ResourceTable) -> int:
        added = 0
        for res in table.resources():
            if not res.url:
                continue
            added += self.table.add(
                res, relative_ref(res.url), absolute_ref(res.url, self.url)
            )
        return added

    def merge_bundle(self, bundle: Bundle) -> int:
        return self.merge_table(bundle.table)


def load_mhtml(source: Union[bytes, str, os.PathLike, BinaryIO]) -> Snapshot:
    if isinstance(source, (bytes, bytearray)):
        raw = bytes(source)
    elif hasattr(source, "read"):
        raw = source.read()
    else:
        try:
            with open(source, "rb") as f:
                raw = f.read()
        except OSError as e:
            raise FormatError(f"cannot read {source}: {e}") from e

    # some producers emit a stray blank line before the first header
    raw = raw.lstrip()
    if not raw:
        raise FormatError("empty snapshot")
    msg = email.message_from_bytes(raw)
    if not msg.keys() or any(
        isinstance(d, MissingHeaderBodySeparatorDefect) for d in msg.defects
    ):
        raise FormatError("malformed MIME header block")

    parts = decode_parts(msg)
    return Snapshot(
        parts,
        url=(msg.get("Snapshot-Content-Location") or "").strip(),
        start=msg.get_param("start") or "",
    )


# -------------------- Reference resolution --------------------


class ReferenceResolver:
    """Table lookup with a once-per-URL network fallback.

    Lookups try the raw reference, then its relative and absolute forms. A miss
    that is not a cid: reference is fetched; the result lands in the table under
    both forms, so later lookups never hit the network again. Failed fetches are
    remembered as well.
    """

    def __init__(
        self,
        table: ResourceTable,
        base_url: str,
        session: Optional[requests.Session] = None,
        *,
        fetch: bool = True,
        timeout: float = 60.0,
    ):
        self.table = table
        self.base_url = base_url
        self.fetch_missing = fetch
        self.timeout = timeout
        self._session = session
        self._attempted: Set[str] = set()
        self._lock = Lock()

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = build_session()
        return self._session

    def rebased(self, base_url: str) -> "ReferenceResolver":
        other = ReferenceResolver(
            self.table,
            base_url or self.base_url,
            self._session,
            fetch=self.fetch_missing,
            timeout=self.timeout,
        )
        other._attempted = self._attempted
        other._lock = self._lock
        return other

    def forms(self, ref: str) -> Tuple[str, str]:
        return relative_ref(ref), absolute_ref(ref, self.base_url)

    def lookup(self, ref: str) -> Optional[Resource]:
        return self.table.lookup(ref, *self.forms(ref))

    def resolve(self, ref: str) -> Tuple[Optional[Resource], bool]:
        res = self.lookup(ref)
        if res is None:
            if ref.startswith("cid:"):
                logging.warning("missing %s", ref)
            elif self.fetch_missing:
                try:
                    self.fetch(ref)
                except NetworkFetchError as e:
                    logging.warning("%s", e)
                res = self.lookup(ref)
        return res, res is not None

    def fetch(self, ref: str) -> Optional[Resource]:
        relative, absolute = self.forms(ref)
        if urlsplit(absolute).scheme not in ("http", "https"):
            logging.debug("not a network location: %s", ref)
            return None
        with self._lock:
            if absolute in self._attempted:
                return None
            self._attempted.add(absolute)

        logging.debug("fetch %s", absolute)
        try:
            r = self.session.get(absolute, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkFetchError(absolute, str(e)) from e
        if not 200 <= r.status_code < 300:
            raise NetworkFetchError(absolute, f"HTTP {r.status_code}")
        content_type = r.headers.get("Content-Type")
        res = Resource(
            mime_type=mime_essence(content_type) or guess_mime(absolute),
            url=absolute,
            data=r.content,
            text_encoding=charset_of(content_type),
        )
        self.table.add(res, relative, absolute)
        return res


# -------------------- Markup rewriting --------------------


def parse_markup(markup: Union[str, bytes], encoding: str = "") -> BeautifulSoup:
    kwargs = {"from_encoding": encoding} if encoding and isinstance(markup, bytes) else {}
    try:
        return BeautifulSoup(markup, "lxml", **kwargs)
    except Exception:
        try:
            return BeautifulSoup(markup, "html.parser", **kwargs)
        except Exception as e:
            raise ParseError(f"cannot parse markup: {e}") from e


def serialize_html(soup: BeautifulSoup) -> str:
    try:
        return soup.decode(formatter="html")
    except Exception:
        return str(soup)


def clean_css_ref(token: str) -> str:
    u = token.strip(" \t\r\n\"'")
    for entity in QUOTE_ENTITIES:
        if u.startswith(entity):
            u = u[len(entity) :]
        if u.endswith(entity):
            u = u[: -len(entity)]
    return u.strip()


def parse_css_refs(css: str) -> List[str]:
    refs: List[str] = []
    for m in CSS_URL_RE.finditer(css):
        u = clean_css_ref(m.group(1))
        if u and not u.startswith("data:") and u not in refs:
            refs.append(u)
    return refs


def decode_stylesheet(res: Resource) -> Tuple[str, str]:
    # undeclared and not UTF-8: latin-1 round-trips every byte
    if not res.text_encoding:
        try:
            return res.data.decode("utf-8"), "utf-8"
        except UnicodeDecodeError:
            return res.data.decode("latin-1"), "latin-1"
    return decode_text(res.data, res.text_encoding)


def replace_css_refs(css: str, pairs: Mapping[str, str]) -> str:
    """Swap resolved references in one pass over the url() tokens.

    Only the reference inside a token is touched; its quotes and any other
    token whose reference is not in pairs stay as they are.
    """
    if not pairs:
        return css

    def sub(m: "re.Match[str]") -> str:
        token = m.group(1)
        ref = clean_css_ref(token)
        uri = pairs.get(ref)
        if uri is None:
            return m.group(0)
        head = m.group(0)[: m.start(1) - m.start()]
        return head + token.replace(ref, uri, 1) + ")"

    return CSS_URL_RE.sub(sub, css)


class MarkupRewriter:
    def __init__(self, resolver: ReferenceResolver):
        self.resolver = resolver
        self.unresolved: List[str] = []

    def _unresolved(self, kind: str, ref: str) -> None:
        self.unresolved.append(ref)
        warnings.warn(
            UnresolvedReferenceWarning(f"cannot find {kind} {ref}"), stacklevel=3
        )

    def css_replace(self, css: str, resolver: Optional[ReferenceResolver] = None) -> str:
        resolver = resolver or self.resolver
        pairs: Dict[str, str] = {}
        for ref in parse_css_refs(css):
            res, found = resolver.resolve(ref)
            if not found:
                self._unresolved("css", ref)
                continue
            pairs[ref] = res.data_uri()
        return replace_css_refs(css, pairs)

    def rewrite_stylesheets(self) -> int:
        patched = 0
        table = self.resolver.table
        for res in table.resources():
            if res.mime_type != "text/css":
                continue
            css, codec = decode_stylesheet(res)
            # references inside a stylesheet are relative to the stylesheet
            cxx = self.css_replace(css, self.resolver.rebased(res.url))
            if cxx != css:
                table.reset_data(res, cxx.encode(codec, errors="replace"))
                patched += 1
        return patched

    def rewrite(
        self,
        markup: Union[str, bytes],
        encoding: str = "",
        page_url: Optional[str] = None,
    ) -> str:
        soup = parse_markup(markup, encoding)
        self.rewrite_soup(soup)
        if page_url:
            decorate(soup, page_url)
        return serialize_html(soup)

    def rewrite_soup(self, soup: BeautifulSoup) -> None:
        for link in soup.find_all("link"):
            rel = link.get("rel") or ""
            if not isinstance(rel, str):
                rel = " ".join(rel)
            if rel.strip().lower() in LINK_RELS:
                self._inline(link, "href")
        for style in soup.find_all("style"):
            if style.string:
                cxx = self.css_replace(style.string)
                if cxx != style.string:
                    style.string.replace_with(cxx)
        for tag in soup.select("[style]"):
            css = tag.get("style")
            if css:
                cxx = self.css_replace(css)
                if cxx != css:
                    tag["style"] = cxx
        for img in soup.find_all("img"):
            # alternate resolutions are not captured separately
            if "srcset" in img.attrs:
                del img["srcset"]
            self._inline(img, "src")
        for tag in soup.find_all(["script", "video", "source"]):
            self._inline(tag, "src")
        for iframe in soup.find_all("iframe"):
            src = iframe.get("src") or ""
            if not src.startswith("cid:"):
                continue
            res, found = self.resolver.resolve(src)
            if not found:
                self._unresolved("iframe source", src)
                continue
            loc = res.content_location if isinstance(res, Part) else res.url
            if loc:
                iframe["src"] = loc

    def _inline(self, tag, attr: str) -> None:
        ref = tag.get(attr) or ""
        if not ref or ref.startswith("data:"):
            return
        res, found = self.resolver.resolve(ref)
        if not found:
            self._unresolved(f"{tag.name} {attr}", ref)
            return
        tag[attr] = res.data_uri()


# -------------------- Decoration --------------------

HEADER_TPL = """
<p>
  <a title="Published: {published}" href="{link}" style="display:block; color: #000; padding-bottom: 10px; text-decoration: none; font-size:1em; font-weight: normal;">
    <span style="display: block; color: #666; font-size:1.0em; font-weight: normal;">{origin}</span>
    <span style="font-size: 1.5em;">{title}</span>
  </a>
</p>"""

FOOTER_TPL = """
<br/><br/>
<a style="display: inline-block; border-top: 1px solid #ccc; padding-top: 5px; color: #666; text-decoration: none;"
   href="{link}">{text}</a>
<p style="color:#999;">Saved with webarchive-singlefile</p>"""


def publish_time(soup: BeautifulSoup) -> datetime:
    meta = soup.find("meta", attrs={"property": "article:published_time"})
    content = meta.get("content") if meta else None
    if content:
        try:
            return datetime.strptime(content.strip(), "%Y-%m-%dT%H:%M:%S%z")
        except ValueError:
            logging.debug("unparsable published time %r", content)
    return datetime.now().astimezone()


def decorate(soup: BeautifulSoup, page_url: str) -> None:
    """Add a title header, a source footer and a publish-time meta tag."""
    host = urlsplit(page_url).hostname or ""
    for selector, first_only in SITE_CLEANUPS.get(host, ()):
        nodes = soup.select(selector, limit=1 if first_only else None)
        for node in nodes:
            node.decompose()

    published = publish_time(soup)
    site = soup.find("meta", attrs={"property": "og:site_name"})
    origin = (site.get("content") if site else None) or host or "origin"
    title = soup.title.get_text() if soup.title else ""
    link = html.escape(page_url, quote=True)

    if soup.head is None and soup.html is not None:
        soup.html.insert(0, soup.new_tag("head"))
    if soup.head is not None:
        soup.head.append(
            soup.new_tag(
                "meta",
                attrs={
                    "name": "webarchive:publish",
                    "content": published.strftime("%a, %d %b %Y %H:%M:%S %z"),
                },
            )
        )
    if soup.body is None:
        return
    header = BeautifulSoup(
        HEADER_TPL.format(
            published=published.strftime("%Y-%m-%d %H:%M:%S"),
            link=link,
            origin=html.escape(origin),
            title=html.escape(title),
        ),
        "html.parser",
    )
    footer = BeautifulSoup(FOOTER_TPL.format(link=link, text=link), "html.parser")
    soup.body.insert(0, header)
    soup.body.append(footer)


# -------------------- Capture proxy --------------------


class BodyRecorder:
    """Tee a response body while the client reads it.

    ``on_done`` is called once: with the full body after the last chunk, or with
    None when the stream is closed before it ended.
    """

    def __init__(
        self, chunks: Iterable[bytes], on_done: Callable[[Optional[bytes]], None]
    ):
        self._chunks = iter(chunks)
        self._buf = bytearray()
        self._on_done = on_done
        self._closed = False
        self.complete = False

    def __iter__(self) -> "BodyRecorder":
        return self

    def __next__(self) -> bytes:
        try:
            chunk = next(self._chunks)
        except StopIteration:
            self.complete = True
            self.close()
            raise
        self._buf.extend(chunk)
        return chunk

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._on_done(bytes(self._buf) if self.complete else None)


def _pump(src: socket.socket, dst: socket.socket) -> None:
    try:
        while True:
            data = src.recv(CHUNK_SIZE)
            if not data:
                break
            dst.sendall(data)
    except OSError as e:
        logging.debug("splice closed: %s", e)
    finally:
        try:
            dst.shutdown(socket.SHUT_WR)
        except OSError:
            pass


class _ProxyHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    proxy: "CaptureProxy"
    tunnel_host: Optional[str] = None

    def log_message(self, format: str, *args) -> None:
        logging.debug("proxy: " + format, *args)

    def do_GET(self) -> None:
        url = self._target_url()
        if url is None:
            self._send_plain(
                400, b"Cannot handle requests without Host header, e.g., HTTP 1.0"
            )
            return
        res = self.proxy.lookup(url)
        if res is not None:
            logging.debug("read local: %s", url)
            self._send_cached(res)
            return
        if self.headers.get("Upgrade") and "upgrade" in (
            self.headers.get("Connection") or ""
        ).lower():
            logging.debug("pass through: %s", url)
            self._splice(url)
            return
        logging.debug("read remote: %s", url)
        self._forward(url)

    do_HEAD = do_POST = do_PUT = do_PATCH = do_DELETE = do_OPTIONS = do_GET

    def do_CONNECT(self) -> None:
        # always intercepted: the table is keyed by https:// URLs
        try:
            ctx = self.proxy.tls_context()
        except SinglefileError as e:
            logging.error("%s", e)
            self._send_plain(502, str(e).encode("utf-8"))
            self.close_connection = True
            return
        self.send_response(200, "Connection established")
        self.end_headers()
        try:
            conn = ctx.wrap_socket(self.connection, server_side=True)
        except (ssl.SSLError, OSError) as e:
            logging.debug("TLS handshake failed for %s: %s", self.path, e)
            self.close_connection = True
            return
        host, _, port = self.path.rpartition(":")
        self.tunnel_host = host if port == "443" else self.path
        self.connection = conn
        self.rfile = conn.makefile("rb", self.rbufsize)
        self.wfile = conn.makefile("wb")
        self.close_connection = False

    def _target_url(self) -> Optional[str]:
        try:
            parts = urlsplit(self.path)
        except ValueError:
            return None
        if self.tunnel_host:
            return urlunsplit(
                ("https", self.tunnel_host, parts.path or "/", parts.query, "")
            )
        host = self.headers.get("Host") or parts.netloc
        if not host:
            return None
        return urlunsplit(
            (parts.scheme or "http", host, parts.path or "/", parts.query, "")
        )

    def _send_plain(self, code: int, body: bytes) -> None:
        self.send_response(code)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_cached(self, res: Resource) -> None:
        self.send_response(200)
        self.send_header("Content-Type", res.mime_type or guess_mime(res.url))
        self.send_header("Content-Length", str(len(res.data)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(res.data)

    def _write_chunk(self, chunk: bytes) -> None:
        self.wfile.write(b"%x\r\n%s\r\n" % (len(chunk), chunk))
        self.wfile.flush()

    def _forward(self, url: str) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length > 0 else None
        headers = {
            k: v
            for k, v in self.headers.items()
            if k.lower() not in HOP_BY_HOP and k.lower() != "host"
        }
        # bodies are relayed decoded, so only ask for encodings requests can undo
        headers["Accept-Encoding"] = DEFAULT_ACCEPT_ENCODING
        try:
            r = self.proxy.session.request(
                self.command,
                url,
                headers=headers,
                data=body,
                stream=True,
                allow_redirects=False,
                timeout=self.proxy.timeout,
                verify=False,
            )
        except requests.RequestException as e:
            logging.warning("proxy error %s: %s", url, e)
            self._send_plain(502, str(e).encode("utf-8"))
            return

        try:
            self.send_response(r.status_code, r.reason)
            for k, v in r.raw.headers.iteritems():
                if k.lower() in HOP_BY_HOP or k.lower() in (
                    "content-length",
                    "content-encoding",
                ):
                    continue
                self.send_header(k, v)
            if self.command == "HEAD" or r.status_code in (204, 304) or r.status_code < 200:
                self.end_headers()
                return
            self.send_header("Transfer-Encoding", "chunked")
            self.end_headers()

            chunks: Iterable[bytes] = r.iter_content(CHUNK_SIZE)
            if self.command == "GET" and r.status_code == 200:
                chunks = self.proxy.recorder(url, r.headers, chunks)
            try:
                for chunk in chunks:
                    if chunk:
                        self._write_chunk(chunk)
                self.wfile.write(b"0\r\n\r\n")
            except (BrokenPipeError, ConnectionResetError) as e:
                logging.debug("client went away during %s: %s", url, e)
                self.close_connection = True
            finally:
                if isinstance(chunks, BodyRecorder):
                    chunks.close()
        finally:
            r.close()

    def _splice(self, url: str) -> None:
        parts = urlsplit(url)
        secure = parts.scheme == "https"
        try:
            upstream = socket.create_connection(
                (parts.hostname, parts.port or (443 if secure else 80)),
                timeout=self.proxy.timeout,
            )
            if secure:
                ctx = ssl.create_default_context()
                ctx.check_hostname = False
                ctx.verify_mode = ssl.CERT_NONE
                upstream = ctx.wrap_socket(upstream, server_hostname=parts.hostname)
            upstream.settimeout(None)
        except OSError as e:
            logging.warning("cannot connect %s: %s", url, e)
            self._send_plain(502, str(e).encode("utf-8"))
            return

        path = urlunsplit(("", "", parts.path or "/", parts.query, ""))
        lines = [f"{self.command} {path} {self.request_version}"]
        for k, v in self.headers.items():
            if k.lower() not in ("proxy-connection", "proxy-authorization"):
                lines.append(f"{k}: {v}")
        upstream.sendall(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))
        self.wfile.flush()

        back = threading.Thread(target=_pump, args=(upstream, self.connection), daemon=True)
        back.start()
        _pump(self.connection, upstream)
        back.join()
        upstream.close()
        self.close_connection = True


class CaptureProxy:
    """Local relay the renderer is pointed at.

    Requests for URLs already in the table are answered from it. Everything else
    goes to the origin; successful GET bodies are recorded while the renderer
    reads them and added to the table by a background capture task.
    """

    def __init__(
        self,
        table: ResourceTable,
        settings: Optional[Settings] = None,
        base_url: str = "",
        session: Optional[requests.Session] = None,
    ):
        self.table = table
        self.settings = settings or Settings()
        self.base_url = base_url
        self.session = session or build_session(self.settings.user_agent)
        self.timeout = self.settings.timeout
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, self.settings.capture_workers),
            thread_name_prefix="capture",
        )
        self._pending: Set[str] = set()
        self._lock = Lock()
        self._idle = threading.Condition(self._lock)
        self._tls: Optional[ssl.SSLContext] = None
        self._certdir: Optional[str] = None
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        # the relay is a local trusted intermediary
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    # lifecycle

    def start(self) -> "CaptureProxy":
        handler = type("CaptureProxyHandler", (_ProxyHandler,), {"proxy": self})
        self._server = ThreadingHTTPServer(
            (self.settings.proxy_host, self.settings.proxy_port), handler
        )
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="capture-proxy", daemon=True
        )
        self._thread.start()
        logging.debug("capture proxy listening on %s", self.url)
        return self

    @property
    def url(self) -> str:
        if self._server is None:
            raise SinglefileError("capture proxy is not running")
        host, port = self._server.server_address[:2]
        return f"http://{host}:{port}"

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        self._pool.shutdown(wait=True)
        if self._certdir:
            shutil.rmtree(self._certdir, ignore_errors=True)
            self._certdir = None

    def __enter__(self) -> "CaptureProxy":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()

    # table access

    def lookup(self, url: str) -> Optional[Resource]:
        return self.table.lookup(url, complete_ref(url, self.base_url))

    def recorder(
        self, url: str, headers: Mapping[str, str], chunks: Iterable[bytes]
    ) -> Iterable[bytes]:
        with self._lock:
            if url in self._pending or url in self.table:
                return chunks
            self._pending.add(url)
        headers = CaseInsensitiveDict(headers)

        def done(body: Optional[bytes]) -> None:
            if body is None:
                logging.debug("discard partial body: %s", url)
                self._release(url)
                return
            try:
                self._pool.submit(self._capture, url, headers, body)
            except RuntimeError as e:
                # pool already shut down by stop()
                logging.debug("drop capture %s: %s", url, e)
                self._release(url)

        return BodyRecorder(chunks, done)

    def _release(self, url: str) -> None:
        with self._idle:
            self._pending.discard(url)
            if not self._pending:
                self._idle.notify_all()

    def _capture(self, url: str, headers: CaseInsensitiveDict, body: bytes) -> bool:
        try:
            if url in self.table:
                return False
            content_type = headers.get("Content-Type")
            headers.setdefault("Content-Location", url)
            part = Part(
                mime_type=mime_essence(content_type) or guess_mime(url),
                url=url,
                data=body,
                text_encoding=charset_of(content_type),
                headers=headers,
            )
            added = self.table.add(part, url) > 0
            if added:
                logging.debug("caching: %s", url)
            return added
        finally:
            self._release(url)

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def wait_for_captures(self, timeout: Optional[float] = None) -> bool:
        """Block until every started capture landed in the table."""
        with self._idle:
            if self._idle.wait_for(lambda: not self._pending, timeout):
                return True
            left = len(self._pending)
        logging.warning("%d capture(s) still pending after %.1fs", left, timeout)
        return False

    # TLS interception

    def tls_context(self) -> ssl.SSLContext:
        with self._lock:
            if self._tls is None:
                cert, key = self.settings.tls_cert, self.settings.tls_key
                if not (cert and key):
                    cert, key = self._self_signed()
                ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
                try:
                    ctx.load_cert_chain(cert, key)
                except (ssl.SSLError, OSError) as e:
                    raise SinglefileError(f"cannot load TLS certificate: {e}") from e
                self._tls = ctx
            return self._tls

    def _self_signed(self) -> Tuple[str, str]:
        openssl = shutil.which("openssl")
        if openssl is None:
            raise SinglefileError(
                "openssl not found; pass --tls-cert/--tls-key to intercept HTTPS"
            )
        self._certdir = tempfile.mkdtemp(prefix="singlefile_tls_")
        cert = os.path.join(self._certdir, "proxy.pem")
        key = os.path.join(self._certdir, "proxy.key")
        cmd = [
            openssl, "req", "-x509", "-newkey", "rsa:2048", "-nodes",
            "-keyout", key, "-out", cert, "-days", "2",
            "-subj", "/CN=webarchive-singlefile capture proxy",
        ]  # fmt: skip
        try:
            subprocess.run(cmd, check=True, capture_output=True, timeout=60)
        except (subprocess.SubprocessError, OSError) as e:
            raise SinglefileError(f"cannot create TLS certificate: {e}") from e
        return cert, key


# -------------------- Rendering --------------------


class HtmlRenderer:
    def render(self, url: str, proxy_url: str) -> Optional[str]:
        raise NotImplementedError

    def render_snapshot(self, url: str, proxy_url: str) -> Optional[bytes]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class PlaywrightRenderer(HtmlRenderer):
    def __init__(self, settings: Settings):
        self.s = settings
        self._pl = None
        self._browser = None

    def _ensure_browser(self) -> bool:
        if self._pl is None or self._browser is None:
            try:
                from playwright.sync_api import sync_playwright
            except ImportError:
                logging.error(
                    "Playwright not installed. Run: pip install playwright && playwright install chromium"
                )
                return False
            self._pl = sync_playwright().start()
            self._browser = self._pl.chromium.launch(
                headless=self.s.headless,
                args=["--ignore-certificate-errors"],
                timeout=BROWSER_LAUNCH_TIMEOUT_MS,
            )
        return True

    def _open(self, url: str, proxy_url: str):
        context = self._browser.new_context(
            proxy={"server": proxy_url},
            ignore_https_errors=True,
            user_agent=self.s.user_agent,
        )
        page = context.new_page()
        page.goto(url, wait_until="load", timeout=self.s.render_timeout_ms)
        # fixed delays are a heuristic for lazy content, not a barrier
        page.wait_for_timeout(self.s.settle_seconds * 1000)
        page.evaluate(SCROLL_JS, self.s.scroll_ms)
        page.wait_for_timeout(self.s.settle_seconds * 1000)
        return context, page

    def render(self, url: str, proxy_url: str) -> Optional[str]:
        if not self._ensure_browser():
            return None
        context = None
        try:
            context, page = self._open(url, proxy_url)
            return page.content()
        except Exception as e:
            logging.warning("render failed for %s: %s", url, e)
            return None
        finally:
            if context is not None:
                context.close()

    def render_snapshot(self, url: str, proxy_url: str) -> Optional[bytes]:
        if not self._ensure_browser():
            return None
        context = None
        try:
            context, page = self._open(url, proxy_url)
            cdp = context.new_cdp_session(page)
            snap = cdp.send("Page.captureSnapshot", {"format": "mhtml"})
            return snap["data"].encode("utf-8")
        except Exception as e:
            logging.warning("snapshot failed for %s: %s", url, e)
            return None
        finally:
            if context is not None:
                context.close()

    def close(self) -> None:
        try:
            if self._browser:
                self._browser.close()
        finally:
            if self._pl:
                self._pl.stop()
            self._browser = None
            self._pl = None


# -------------------- Pipeline --------------------


def output_path(src: Path, settings: Settings) -> Path:
    out = src.with_suffix(".html")
    if settings.output_dir:
        out = Path(settings.output_dir) / out.name
    return out


def embed_snapshot(
    snap: Snapshot, resolver: ReferenceResolver, settings: Settings
) -> str:
    rewriter = MarkupRewriter(resolver)
    rewriter.rewrite_stylesheets()
    return rewriter.rewrite(
        snap.html,
        encoding=snap.root.text_encoding,
        page_url=snap.url if settings.decorate else None,
    )


def convert_mhtml(
    src: Path, settings: Settings, session: Optional[requests.Session] = None
) -> str:
    snap = load_mhtml(src)
    resolver = ReferenceResolver(
        snap.table,
        snap.url,
        session,
        fetch=settings.fetch_missing,
        timeout=settings.timeout,
    )
    return embed_snapshot(snap, resolver, settings)


def convert_webarchive(
    src: Path,
    settings: Settings,
    renderer: Optional[HtmlRenderer] = None,
    session: Optional[requests.Session] = None,
) -> str:
    bundle = load_webarchive(src)
    url = bundle.url
    rendered: Union[str, bytes, None] = None

    if settings.render:
        own = renderer is None
        renderer = renderer or PlaywrightRenderer(settings)
        try:
            with CaptureProxy(
                bundle.table, settings, base_url=url, session=session
            ) as proxy:
                if settings.snapshot:
                    rendered = renderer.render_snapshot(url, proxy.url)
                else:
                    rendered = renderer.render(url, proxy.url)
                proxy.wait_for_captures(settings.capture_wait)
        finally:
            if own:
                renderer.close()
        if rendered is None:
            logging.warning("cannot render %s, using the archived document", src)

    if settings.snapshot and rendered is not None:
        snap = load_mhtml(rendered)
        snap.merge_bundle(bundle)
        resolver = ReferenceResolver(
            snap.table,
            snap.url or url,
            session,
            fetch=settings.fetch_missing,
            timeout=settings.timeout,
        )
        return embed_snapshot(snap, resolver, settings)

    resolver = ReferenceResolver(
        bundle.table,
        url,
        session,
        fetch=settings.fetch_missing,
        timeout=settings.timeout,
    )
    rewriter = MarkupRewriter(resolver)
    rewriter.rewrite_stylesheets()
    if rendered is None:
        markup: Union[str, bytes] = bundle.main.data
        encoding = bundle.main.text_encoding
    else:
        markup, encoding = rendered, ""
    return rewriter.rewrite(
        markup, encoding=encoding, page_url=url if settings.decorate else None
    )


def _looks_like_plist(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            head = f.read(16)
    except OSError:
        return True
    return head.startswith((b"bplist", b"<?xml", b"<!DOCTYPE plist", b"<plist"))


def convert_file(
    path: Union[str, os.PathLike],
    settings: Settings,
    renderer: Optional[HtmlRenderer] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    src = Path(path)
    suffix = src.suffix.lower()
    if suffix in MHTML_SUFFIXES or (
        suffix != ".webarchive" and not _looks_like_plist(src)
    ):
        text = convert_mhtml(src, settings, session)
    else:
        text = convert_webarchive(src, settings, renderer, session)
    # only written once the whole rewrite succeeded
    out = output_path(src, settings)
    atomic_write_text(out, text)
    return out


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            try:
                import tomli as tomllib  # backport
            except ImportError:
                raise RuntimeError("TOML config requires Python 3.11+ or 'tomli'")
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="webarchive-singlefile",
        description="Convert Safari .webarchive and .mhtml snapshots to self-contained .html files.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument(
        "inputs",
        nargs="*",
        help="input files (default: *.webarchive, *.mhtml, *.mht in the current directory)",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    p.add_argument("--about", action="store_true", help="show version and exit")
    p.add_argument("--output-dir", type=str, default=None, help="write .html files here")
    p.add_argument(
        "--timeout", type=float, default=60.0, help="network timeout seconds"
    )
    p.add_argument(
        "--offline",
        action="store_true",
        help="never fetch missing references from the network",
    )
    p.add_argument(
        "--decorate",
        action="store_true",
        help="add a title header and a source link footer",
    )

    # render
    p.add_argument(
        "--no-render",
        action="store_true",
        help="rewrite the archived document without loading it in a browser",
    )
    p.add_argument(
        "--snapshot",
        action="store_true",
        help="let the browser produce an MHTML snapshot instead of outer HTML",
    )
    p.add_argument(
        "--render-timeout-ms", type=int, default=60000, help="navigation timeout ms"
    )
    p.add_argument(
        "--settle-seconds",
        type=float,
        default=5.0,
        help="wait before and after scrolling the page",
    )
    p.add_argument(
        "--scroll-ms", type=int, default=4000, help="time spent scrolling to the bottom"
    )
    p.add_argument(
        "--capture-wait",
        type=float,
        default=10.0,
        help="max seconds to wait for pending captures after rendering",
    )
    p.add_argument(
        "--show-browser", action="store_true", help="do not run the browser headless"
    )

    # proxy
    p.add_argument("--tls-cert", type=str, default=None, help="PEM certificate for HTTPS interception")
    p.add_argument("--tls-key", type=str, default=None, help="PEM key for --tls-cert")

    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("general", "render", "network", "output"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        timeout=max(1.0, args.timeout),
        fetch_missing=not args.offline,
        render=not args.no_render,
        snapshot=args.snapshot,
        headless=not args.show_browser,
        render_timeout_ms=max(1000, args.render_timeout_ms),
        settle_seconds=max(0.0, args.settle_seconds),
        scroll_ms=max(0, args.scroll_ms),
        capture_wait=max(0.0, args.capture_wait),
        tls_cert=args.tls_cert,
        tls_key=args.tls_key,
        decorate=args.decorate,
        output_dir=args.output_dir,
    )


def expand_inputs(inputs: List[str]) -> List[str]:
    if not inputs or inputs == ["*.webarchive"]:
        found: List[str] = []
        for pattern in INPUT_PATTERNS:
            found.extend(sorted(glob.glob(pattern)))
        return found
    out: List[str] = []
    for arg in inputs:
        matches = sorted(glob.glob(arg)) if glob.has_magic(arg) else [arg]
        out.extend(matches)
    return list(dict.fromkeys(out))


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    logging.captureWarnings(True)

    if args.about:
        print(f"webarchive-singlefile {__version__}")
        return 0

    inputs = expand_inputs(args.inputs)
    if not inputs:
        logging.error("no .webarchive or .mhtml file given")
        return 2

    settings = settings_from_args(args)
    renderer = PlaywrightRenderer(settings) if settings.render else None
    session = build_session(settings.user_agent)
    failed = 0
    try:
        for path in inputs:
            logging.info("process %s", path)
            try:
                out = convert_file(path, settings, renderer=renderer, session=session)
            except (SinglefileError, OSError) as e:
                failed += 1
                logging.error("cannot convert %s: %s", path, e)
                continue
            logging.info("saved %s", out)
    finally:
        if renderer is not None:
            renderer.close()
        session.close()
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
