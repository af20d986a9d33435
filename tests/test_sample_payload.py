"""Parse a realistic exposition payload once and check grouping + metadata.

The payload in tests/data mixes process, nodejs, http histogram and custom
mw_* families, a summary with a NaN quantile, one garbled line and one sample
with a trailing timestamp.
"""

import math
import os
import pytest
from metrics_dashboard.ingestion.parser import ExpositionParser, MetricType

SAMPLE_PAYLOAD = os.path.abspath(os.path.join(os.path.dirname(__file__), 'data', 'sample_metrics.prom'))

with open(SAMPLE_PAYLOAD, encoding='utf-8') as fh:
    parser = ExpositionParser(fh.read())
parsed = parser.parse()
stats = parser.stats()
by_name: dict[str, list] = {}
for s in parsed.all_samples():
    by_name.setdefault(s.name, []).append(s)


def test_group_sizes():
    assert len(parsed.process_metrics) == 3
    assert len(parsed.node_metrics) == 2
    assert len(parsed.http_metrics) == 7
    assert len(parsed.custom_metrics) == 17
    assert len(parsed) == 29


def test_stats_counters():
    assert stats['samples_emitted'] == 29
    assert stats['skipped_lines'] == 1
    assert stats['directive_lines'] == 24
    assert stats['sample_lines'] == 30


def test_histogram_components_share_family_metadata():
    for name in ('http_request_duration_seconds_bucket', 'http_request_duration_seconds_sum',
                 'http_request_duration_seconds_count'):
        for s in by_name[name]:
            assert s.type is MetricType.HISTOGRAM
            assert s.help == 'Duration of HTTP requests in seconds'


def test_le_label_keeps_inf_as_string():
    les = [s.labels['le'] for s in by_name['http_request_duration_seconds_bucket']]
    assert les == ['0.1', '0.5', '+Inf']


def test_summary_quantiles_and_components():
    quantiles = by_name['mw_latency']
    assert [q.labels['quantile'] for q in quantiles] == ['0.5', '0.99']
    assert math.isnan(quantiles[1].value)
    for name in ('mw_latency', 'mw_latency_sum', 'mw_latency_count'):
        assert by_name[name][0].type is MetricType.SUMMARY


def test_quoted_label_with_comma_brace_and_escaped_quote():
    titles = [s.labels['title'] for s in by_name['mw_media_watch_count']]
    assert titles[0] == 'The Matrix, "Reloaded" {cut}'


def test_untyped_sample_with_timestamp():
    s = by_name['mw_untyped_thing'][0]
    assert s.value == 1.0
    assert s.help is None and s.type is None


# Parametrized group membership checks (exact name -> expected group)
PARAM_CASES = [
    ('process cpu', 'process_cpu_seconds_total', 'processMetrics'),
    ('process memory', 'process_resident_memory_bytes', 'processMetrics'),
    ('event loop lag', 'nodejs_eventloop_lag_seconds', 'nodeMetrics'),
    ('heap size', 'nodejs_heap_size_total_bytes', 'nodeMetrics'),
    ('http count', 'http_request_duration_seconds_count', 'httpMetrics'),
    ('provider status', 'mw_provider_status_count', 'customMetrics'),
    ('provider tool', 'mw_provider_tool_count', 'customMetrics'),
    ('hostname', 'mw_provider_hostname_count', 'customMetrics'),
    ('user count', 'mw_user_count', 'customMetrics'),
]


@pytest.mark.parametrize('desc,name,group', PARAM_CASES, ids=[c[0] for c in PARAM_CASES])
def test_metric_group_parametrized(desc, name, group):  # noqa: D103 (descriptions via ids)
    names = {s.name for s in parsed.group(group)}
    assert name in names, f'{name} missing from {group}'
