import os, time, threading
from typing import Optional, Dict, Any, List

from .ingestion.parser import GROUPS, MetricsDecodeError
from .ingestion.loader import (
    LoadResult, MetricsFetchError, MetricsFileError, load_metrics, parse_text
)
from .summary import dashboard_summary as _dashboard_summary, hostname_stats
from .debug_util import dbg
from fastmcp import FastMCP

# ----------------- System Prompt Guidance -----------------
SYSTEM_PROMPT = (
    "Workflow (single active snapshot):\n"
    "1. load_metrics_source(source=<http(s) url | file path>) fetches or imports one exposition payload.\n"
    "2. Every load replaces the active snapshot; call it again to refresh (the dashboard polls every 30s).\n"
    "3. active_snapshot(group=..., name_prefix=...) lists samples; groups are processMetrics, nodeMetrics, httpMetrics, customMetrics.\n"
    "4. dashboard_summary() returns provider status, failure rates, route timings, hostname stats and overview numbers.\n"
    "5. parse_metrics(text=...) parses inline text without touching the active snapshot.\n"
    "6. raw_metrics() returns the raw text of the active snapshot; unload_metrics() clears it.\n"
    "Values may be '+Inf', '-Inf' or 'NaN' strings; treat them as non-finite numbers.\n"
)

mcp = FastMCP("metrics-dashboard-mcp")

DEFAULT_SOURCE = os.environ.get('METRICS_DEFAULT_URL')
DEFAULT_LIMIT = 500

_ACTIVE_LOCK = threading.Lock()
ACTIVE_SNAPSHOT: Optional[LoadResult] = None  # replaced as a whole on every load

_TOOL_ERRORS = (MetricsFetchError, MetricsFileError, MetricsDecodeError, ValueError)


def _error(e: Exception) -> dict:
    out: Dict[str, Any] = {'error': e.__class__.__name__, 'detail': str(e).split('\n')[0]}
    status = getattr(e, 'status', None)
    if status is not None:
        out['status'] = status
    return out


def _set_active(result: Optional[LoadResult]) -> Optional[LoadResult]:
    global ACTIVE_SNAPSHOT
    with _ACTIVE_LOCK:
        previous = ACTIVE_SNAPSHOT
        ACTIVE_SNAPSHOT = result
    return previous


def get_active() -> Optional[LoadResult]:
    with _ACTIVE_LOCK:
        return ACTIVE_SNAPSHOT

# ----------------- Tools -----------------

def _parse_metrics_impl(text: str, include_samples: bool = True) -> dict:
    dbg(f'parse_metrics: chars={len(text) if isinstance(text, str) else "n/a"}')
    result = parse_text(text)
    body = result.summary()
    if include_samples:
        body['metrics'] = result.metrics.to_dict()
    return body


@mcp.tool()
def parse_metrics(text: str, include_samples: bool = True) -> dict:
    """Parse inline Prometheus exposition text.

    Returns {counts, total, stats, metrics{processMetrics,nodeMetrics,httpMetrics,customMetrics}}.
    Does not change the active snapshot."""
    try:
        return _parse_metrics_impl(text, include_samples=include_samples)
    except MetricsDecodeError as e:
        return _error(e)


def _load_metrics_source_impl(source: Optional[str] = None) -> dict:
    source = source or os.environ.get('METRICS_DEFAULT_URL', DEFAULT_SOURCE or '')
    if not source:
        raise ValueError('source required (url or file path) and METRICS_DEFAULT_URL not set')
    t0 = time.time()
    result = load_metrics(source)
    previous = _set_active(result)
    body = result.summary()
    body['replaced_previous'] = previous is not None
    body['duration_ms'] = int((time.time() - t0) * 1000)
    dbg(f'load_metrics_source: source={source} total={body["total"]} replaced={body["replaced_previous"]}')
    return body


@mcp.tool()
def load_metrics_source(source: Optional[str] = None) -> dict:
    """Fetch an http(s) metrics endpoint or import a local file, then make it the active snapshot.

    A failed fetch/import leaves the previous snapshot in place and returns {'error', 'detail'}."""
    try:
        return _load_metrics_source_impl(source)
    except _TOOL_ERRORS as e:
        dbg(f'load_metrics_source failed source={source} err={e.__class__.__name__}:{e}')
        return _error(e)


def _active_snapshot_impl(group: Optional[str] = None, name_prefix: Optional[str] = None, limit: int = DEFAULT_LIMIT) -> dict:
    active = get_active()
    if active is None:
        return {'loaded': False, 'metrics': {g: [] for g in GROUPS}}
    if group is not None and group not in GROUPS:
        raise ValueError(f'unknown group {group!r}; expected one of {list(GROUPS)}')
    selected = [group] if group else list(GROUPS)
    metrics: Dict[str, List[dict]] = {}
    truncated = False
    for g in selected:
        rows = [s for s in active.metrics.group(g) if not name_prefix or s.name.startswith(name_prefix)]
        if limit and len(rows) > limit:
            rows = rows[:limit]
            truncated = True
        metrics[g] = [s.to_dict() for s in rows]
    body = active.summary()
    body.update({'loaded': True, 'metrics': metrics, 'truncated': truncated})
    return body


@mcp.tool()
def active_snapshot(group: Optional[str] = None, name_prefix: Optional[str] = None, limit: int = DEFAULT_LIMIT) -> dict:
    """Samples from the active snapshot, optionally filtered by group and metric-name prefix.

    limit caps samples per group (0 = no cap)."""
    try:
        return _active_snapshot_impl(group=group, name_prefix=name_prefix, limit=limit)
    except ValueError as e:
        return _error(e)


@mcp.tool()
def dashboard_summary(limit: int = 10, hostname_search: Optional[str] = None) -> dict:
    """Dashboard aggregations (overview, provider status, failure rates, tool usage, route timings, hostnames)."""
    active = get_active()
    if active is None:
        return {'loaded': False}
    body = _dashboard_summary(active.metrics, limit=limit)
    if hostname_search:
        body['hostname_stats'] = hostname_stats(active.metrics, search=hostname_search)
    body.update({'loaded': True, 'source': active.source, 'loaded_at_ms': active.loaded_at_ms})
    return body


@mcp.tool()
def raw_metrics(max_chars: int = 20000) -> dict:
    """Raw exposition text of the active snapshot (truncated to max_chars)."""
    active = get_active()
    if active is None:
        return {'loaded': False, 'raw': None}
    raw = active.raw_text
    return {'loaded': True, 'source': active.source, 'raw': raw[:max_chars] if max_chars else raw,
            'truncated': bool(max_chars) and len(raw) > max_chars}


@mcp.tool()
def unload_metrics() -> dict:
    previous = _set_active(None)
    return {'unloaded': previous is not None, 'source': previous.source if previous else None}


@mcp.tool()
def healthz() -> dict:
    active = get_active()
    return {'status': 'ok', 'time': int(time.time() * 1000), 'loaded': active is not None}


def init_server() -> dict:
    """Optionally preload METRICS_DEFAULT_URL. Failures are reported, not raised."""
    status: Dict[str, Any] = {}
    source = os.environ.get('METRICS_DEFAULT_URL')
    if not source:
        status['preload'] = 'skipped'
        return status
    try:
        status['preload'] = _load_metrics_source_impl(source)
    except _TOOL_ERRORS as e:
        status['preload'] = _error(e)
    return status


# --------------- HTTP runner via mcp.run ---------------

if __name__ == '__main__':
    print('Initializing server...')
    print(init_server())
    host = os.environ.get('HOST', '0.0.0.0')
    port = int(os.environ.get('PORT', '8000'))
    print(f'Starting FastMCP on {host}:{port}')
    mcp.run(transport="http", host=host, port=port, stateless_http=True)
