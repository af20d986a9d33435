from __future__ import annotations
import math
from typing import Dict, Iterable, List, Optional

from .ingestion.parser import MetricSample, ParsedMetrics

"""Dashboard aggregations over a ParsedMetrics snapshot.

Everything here is downstream of the parser: it reads the grouped samples and
never changes them. Non-finite values (+Inf/-Inf/NaN) are skipped when summing.
"""

PROVIDER_STATUS_NAMES = ('mw_provider_status_count', 'mw_provider_status_count_daily',
                         'mw_provider_status_count_weekly', 'mw_provider_status_count_monthly')
PROVIDER_HOSTNAME_NAMES = ('mw_provider_hostname_count', 'mw_provider_hostname_count_daily',
                           'mw_provider_hostname_count_weekly', 'mw_provider_hostname_count_monthly')
MEDIA_WATCH_NAMES = ('mw_media_watch_count', 'mw_media_watch_count_daily',
                     'mw_media_watch_count_weekly', 'mw_media_watch_count_monthly')
USER_COUNT_NAMES = ('mw_user_count', 'mw_user_count_daily', 'mw_user_count_weekly', 'mw_user_count_monthly')
PROVIDER_TOOL_NAME = 'mw_provider_tool_count'
HTTP_DURATION_PREFIX = 'http_request_duration_seconds'
EVENT_LOOP_LAG_NAME = 'nodejs_eventloop_lag_seconds'

STATUSES = ('success', 'failed', 'notfound')


def _finite(v: float) -> float:
    return v if math.isfinite(v) else 0.0


def _named(samples: Iterable[MetricSample], names) -> List[MetricSample]:
    return [s for s in samples if s.name in names]


def provider_status_stats(metrics: ParsedMetrics) -> Dict[str, Dict[str, float]]:
    """{provider_id: {success, failed, notfound}}; the last sample per status wins."""
    stats: Dict[str, Dict[str, float]] = {}
    for s in _named(metrics.custom_metrics, PROVIDER_STATUS_NAMES):
        provider = s.labels.get('provider_id') or 'unknown'
        status = s.labels.get('status') or 'unknown'
        entry = stats.setdefault(provider, {k: 0.0 for k in STATUSES})
        if status in STATUSES:
            entry[status] = _finite(s.value)
    return stats


def provider_failure_rates(stats: Dict[str, Dict[str, float]], limit: Optional[int] = 10) -> List[dict]:
    rows = []
    for provider, st in stats.items():
        total = st['success'] + st['failed'] + st['notfound']
        rate = (st['failed'] / total) * 100 if total > 0 else 0.0
        rows.append({'provider': provider, 'failure_rate': round(rate, 1), **st})
    rows.sort(key=lambda r: r['failure_rate'], reverse=True)
    return rows[:limit] if limit is not None else rows


def provider_status_totals(metrics: ParsedMetrics) -> Dict[str, float]:
    totals = {k: 0.0 for k in STATUSES}
    for s in _named(metrics.custom_metrics, PROVIDER_STATUS_NAMES):
        status = s.labels.get('status')
        if status in totals:
            totals[status] += _finite(s.value)
    return totals


def provider_tool_usage(metrics: ParsedMetrics, limit: int = 10) -> List[dict]:
    rows = [{'tool': s.labels.get('tool') or 'unknown', 'count': _finite(s.value)}
            for s in metrics.custom_metrics if s.name == PROVIDER_TOOL_NAME]
    return rows[:limit]


def _route_key(s: MetricSample) -> str:
    return f"{s.labels.get('method', '')} {s.labels.get('route', '')}"


def http_request_counts(metrics: ParsedMetrics, limit: int = 10) -> List[dict]:
    name = HTTP_DURATION_PREFIX + '_count'
    rows = [{'route': _route_key(s), 'count': _finite(s.value)}
            for s in metrics.http_metrics if s.name == name]
    return rows[:limit]


def route_response_times(metrics: ParsedMetrics, limit: int = 10) -> List[dict]:
    """Average response time in ms per 'METHOD route', slowest first."""
    timings: Dict[str, Dict[str, float]] = {}
    for s in metrics.http_metrics:
        if not s.name.startswith(HTTP_DURATION_PREFIX):
            continue
        route, method = s.labels.get('route'), s.labels.get('method')
        if not route or not method:
            continue
        t = timings.setdefault(f'{method} {route}', {'sum': 0.0, 'count': 0.0})
        if s.name == HTTP_DURATION_PREFIX + '_sum':
            t['sum'] = _finite(s.value)
        elif s.name == HTTP_DURATION_PREFIX + '_count':
            t['count'] = _finite(s.value)
    rows = [{'route': k, 'avg_ms': (t['sum'] / t['count']) * 1000}
            for k, t in timings.items() if t['count'] > 0]
    rows.sort(key=lambda r: r['avg_ms'], reverse=True)
    return rows[:limit]


def hostname_stats(metrics: ParsedMetrics, search: Optional[str] = None) -> List[dict]:
    rows = [{'hostname': s.labels.get('hostname') or 'unknown', 'count': _finite(s.value)}
            for s in _named(metrics.custom_metrics, PROVIDER_HOSTNAME_NAMES)]
    rows.sort(key=lambda r: r['count'], reverse=True)
    total = sum(r['count'] for r in rows)
    for r in rows:
        r['percentage'] = (r['count'] / total) * 100 if total > 0 else 0.0
    if search:
        needle = search.lower()
        rows = [r for r in rows if needle in r['hostname'].lower()]
    return rows


def overview(metrics: ParsedMetrics) -> dict:
    watch = sum(_finite(s.value) for s in _named(metrics.custom_metrics, MEDIA_WATCH_NAMES))
    hosts = {s.labels.get('hostname') for s in _named(metrics.custom_metrics, PROVIDER_HOSTNAME_NAMES)}
    users = next((s.value for s in metrics.custom_metrics if s.name in USER_COUNT_NAMES), 0.0)
    lag = next((s.value for s in metrics.node_metrics if s.name == EVENT_LOOP_LAG_NAME), 0.0)
    return {
        'total_watch_requests': watch,
        'unique_hosts': len(hosts),
        'active_users': _finite(users),
        'event_loop_lag_seconds': round(_finite(lag), 3),
    }


def dashboard_summary(metrics: ParsedMetrics, limit: int = 10) -> dict:
    stats = provider_status_stats(metrics)
    return {
        'overview': overview(metrics),
        'provider_status_totals': provider_status_totals(metrics),
        'provider_failure_rates': provider_failure_rates(stats, limit=limit),
        'provider_tool_usage': provider_tool_usage(metrics, limit=limit),
        'http_request_counts': http_request_counts(metrics, limit=limit),
        'route_response_times': route_response_times(metrics, limit=limit),
        'hostname_stats': hostname_stats(metrics),
    }
