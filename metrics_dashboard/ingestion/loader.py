import os, time, urllib.parse, http.client
from dataclasses import dataclass
from typing import Dict, Optional

from .parser import ExpositionParser, ParsedMetrics, MetricsDecodeError, coerce_text
from ..debug_util import dbg

FETCH_TIMEOUT = float(os.environ.get('METRICS_FETCH_TIMEOUT_MS', '5000')) / 1000.0
MAX_FILE_BYTES = int(os.environ.get('METRICS_MAX_FILE_BYTES', str(32 * 1024 * 1024)))

ACCEPT_HEADER = 'text/plain;version=0.0.4;q=0.9,*/*;q=0.1'

SOURCE_URL = 'url'
SOURCE_FILE = 'file'


class MetricsFetchError(RuntimeError):
    """HTTP retrieval failed (transport error or non-2xx). Raised before parsing."""

    def __init__(self, message: str, status: Optional[int] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.reason = reason


class MetricsFileError(ValueError):
    """File import failed: missing path, not a regular file, or too large."""


@dataclass(frozen=True)
class LoadResult:
    source: str
    kind: str  # url | file | inline
    raw_text: str
    metrics: ParsedMetrics
    stats: Dict[str, int]
    loaded_at_ms: int

    def summary(self) -> dict:
        return {
            'source': self.source,
            'kind': self.kind,
            'loaded_at_ms': self.loaded_at_ms,
            'bytes': len(self.raw_text.encode('utf-8')),
            'counts': {k: len(v) for k, v in self.metrics.groups().items()},
            'total': len(self.metrics),
            'stats': dict(self.stats),
        }


def is_url(source: str) -> bool:
    return urllib.parse.urlparse(source).scheme in ('http', 'https')


def _charset(content_type: Optional[str]) -> str:
    if not content_type:
        return 'utf-8'
    for part in content_type.split(';')[1:]:
        k, _, v = part.strip().partition('=')
        if k.lower() == 'charset' and v:
            return v.strip('"').lower()
    return 'utf-8'


def fetch_metrics_text(url: str, timeout: Optional[float] = None) -> str:
    """GET an exposition endpoint and return the decoded body.

    Non-2xx responses raise MetricsFetchError so nothing half-fetched ever
    reaches the parser. Redirects are not followed.
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise MetricsFetchError(f'unsupported metrics url: {url}')
    path = parsed.path or '/'
    if parsed.query:
        path += '?' + parsed.query
    conn_cls = http.client.HTTPSConnection if parsed.scheme == 'https' else http.client.HTTPConnection
    conn = conn_cls(parsed.netloc, timeout=timeout if timeout is not None else FETCH_TIMEOUT)
    dbg(f'fetch_metrics_text start url={url}')
    try:
        try:
            conn.request('GET', path, headers={'Accept': ACCEPT_HEADER})
            resp = conn.getresponse()
            body = resp.read()
        except (OSError, http.client.HTTPException) as e:
            raise MetricsFetchError(f'Failed to fetch metrics: {e.__class__.__name__}: {e}') from e
        if not 200 <= resp.status < 300:
            dbg(f'fetch_metrics_text bad_status url={url} status={resp.status}')
            raise MetricsFetchError(f'Failed to fetch metrics: {resp.status} {resp.reason}',
                                    status=resp.status, reason=resp.reason)
        charset = _charset(resp.getheader('Content-Type'))
        try:
            text = body.decode(charset)
        except (UnicodeDecodeError, LookupError) as e:
            raise MetricsDecodeError(f'cannot decode metrics body as {charset}: {e}') from e
        dbg(f'fetch_metrics_text done url={url} status={resp.status} bytes={len(body)}')
        return text
    finally:
        try: conn.close()
        except Exception: pass


def read_metrics_file(path: str, max_bytes: Optional[int] = None) -> str:
    limit = MAX_FILE_BYTES if max_bytes is None else max_bytes
    if not os.path.exists(path):
        raise MetricsFileError(f'metrics file not found: {path}')
    if not os.path.isfile(path):
        raise MetricsFileError(f'not a regular file: {path}')
    size = os.path.getsize(path)
    if size > limit:
        raise MetricsFileError(f'metrics file too large: {size} bytes > {limit}')
    with open(path, 'rb') as fh:
        data = fh.read()
    dbg(f'read_metrics_file path={path} size={size}')
    return coerce_text(data)


def parse_text(text, source: str = 'inline', kind: str = 'inline') -> LoadResult:
    text = coerce_text(text)
    parser = ExpositionParser(text)
    metrics = parser.parse()
    return LoadResult(
        source=source,
        kind=kind,
        raw_text=text,
        metrics=metrics,
        stats=parser.stats(),
        loaded_at_ms=int(time.time() * 1000),
    )


def load_metrics(source: str, timeout: Optional[float] = None) -> LoadResult:
    """Fetch (http/https) or import (file path) one payload and parse it."""
    if not source:
        raise ValueError('metrics source required')
    if is_url(source):
        text = fetch_metrics_text(source, timeout=timeout)
        kind = SOURCE_URL
    else:
        text = read_metrics_file(os.path.expanduser(source))
        kind = SOURCE_FILE
    result = parse_text(text, source=source, kind=kind)
    dbg(f'load_metrics done source={source} kind={kind} total={len(result.metrics)} stats={result.stats}')
    return result
