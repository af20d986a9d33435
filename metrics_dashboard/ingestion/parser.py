from __future__ import annotations
import re, math
from dataclasses import dataclass, asdict
from types import MappingProxyType
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Tuple, Union

from ..debug_util import dbg

"""Prometheus text exposition parser

Line handling
-------------
Each line is stripped and classified once:
    # HELP <name> <text>   -> metadata table (help)
    # TYPE <name> <type>   -> metadata table (type)
    # anything else        -> comment, ignored
    <sample>               -> name, labels, value (timestamp consumed, dropped)

A line that does not parse is skipped and counted; it never aborts the parse.
The only fatal error is input that is not text at all (MetricsDecodeError).

Grouping
--------
Samples are grouped by name prefix, first match wins:
    process_ -> processMetrics
    nodejs_  -> nodeMetrics
    http_    -> httpMetrics
    other    -> customMetrics

Metadata lookup strips one of _bucket/_sum/_count when the stripped root was
declared; otherwise the full name is the key. Directives only annotate samples
that come after them.
"""

METRIC_NAME_RE = re.compile(r"[A-Za-z_:][A-Za-z0-9_:]*")
FLOAT_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?\Z")
TIMESTAMP_RE = re.compile(r"[+-]?\d+\Z")

NAME_START_CHARS = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_:")
NAME_CHARS = NAME_START_CHARS | frozenset("0123456789")

FAMILY_SUFFIXES = ('_bucket', '_sum', '_count')

GROUP_PROCESS = 'processMetrics'
GROUP_NODE = 'nodeMetrics'
GROUP_HTTP = 'httpMetrics'
GROUP_CUSTOM = 'customMetrics'
GROUPS = (GROUP_PROCESS, GROUP_NODE, GROUP_HTTP, GROUP_CUSTOM)

LINE_DIRECTIVE = 'directive'
LINE_COMMENT = 'comment'
LINE_SAMPLE = 'sample'

PARSER_DEBUG_FLAG = 'DEBUG_METRICS_PARSER'


class LineParseError(ValueError):
    """A single line could not be parsed. Recoverable: the line is skipped."""


class MetricsDecodeError(ValueError):
    """Input could not be treated as text. Fatal: no result is returned."""


class MetricType(str, Enum):
    COUNTER = 'counter'
    GAUGE = 'gauge'
    HISTOGRAM = 'histogram'
    SUMMARY = 'summary'
    UNTYPED = 'untyped'
    UNKNOWN = 'unknown'


_TYPE_TOKENS: Dict[str, MetricType] = {
    t.value: t for t in MetricType if t is not MetricType.UNKNOWN
}


@dataclass
class MetricFamilyMetadata:
    name: str
    help: Optional[str] = None
    type: Optional[MetricType] = None
    type_token: Optional[str] = None  # raw TYPE token, kept even when unrecognised


@dataclass(frozen=True)
class MetricSample:
    name: str
    value: float
    labels: Mapping[str, str]
    help: Optional[str] = None
    type: Optional[MetricType] = None

    def __post_init__(self):
        # read-only view over a private copy; the caller's dict stays detached
        object.__setattr__(self, 'labels', MappingProxyType(dict(self.labels)))

    def __hash__(self) -> int:
        return hash((self.name, self.value, frozenset(self.labels.items()), self.help, self.type))

    def to_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {
            'name': self.name,
            'value': format_value(self.value),
            'labels': dict(self.labels),
        }
        if self.help is not None:
            out['help'] = self.help
        if self.type is not None:
            out['type'] = self.type.value
        return out


@dataclass(frozen=True)
class ParsedMetrics:
    process_metrics: Tuple[MetricSample, ...] = ()
    node_metrics: Tuple[MetricSample, ...] = ()
    http_metrics: Tuple[MetricSample, ...] = ()
    custom_metrics: Tuple[MetricSample, ...] = ()

    def groups(self) -> Dict[str, Tuple[MetricSample, ...]]:
        return {
            GROUP_PROCESS: self.process_metrics,
            GROUP_NODE: self.node_metrics,
            GROUP_HTTP: self.http_metrics,
            GROUP_CUSTOM: self.custom_metrics,
        }

    def group(self, key: str) -> Tuple[MetricSample, ...]:
        try:
            return self.groups()[key]
        except KeyError:
            raise ValueError(f'unknown metrics group: {key}') from None

    def all_samples(self) -> Iterator[MetricSample]:
        for samples in self.groups().values():
            yield from samples

    def __len__(self) -> int:
        return sum(len(s) for s in self.groups().values())

    def to_dict(self) -> Dict[str, List[Dict[str, object]]]:
        return {k: [s.to_dict() for s in v] for k, v in self.groups().items()}


@dataclass
class ParseStats:
    lines_total: int = 0
    blank_lines: int = 0
    comment_lines: int = 0
    directive_lines: int = 0
    sample_lines: int = 0
    samples_emitted: int = 0
    skipped_lines: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def format_value(value: float) -> Union[float, str]:
    """JSON-safe rendering: non-finite floats become exposition sentinels."""
    if math.isnan(value):
        return 'NaN'
    if math.isinf(value):
        return '+Inf' if value > 0 else '-Inf'
    return value


def normalize_value(token: str) -> float:
    lowered = token.lower()
    if lowered in ('+inf', 'inf'):
        return math.inf
    if lowered == '-inf':
        return -math.inf
    if lowered == 'nan':
        return math.nan
    # float() alone would also take 'infinity', '1_000', etc.
    if not FLOAT_RE.match(token):
        raise LineParseError(f'invalid sample value {token!r}')
    return float(token)


_ESCAPES = {'"': '"', '\\': '\\', 'n': '\n'}

(_LS_BEFORE_NAME, _LS_NAME, _LS_AFTER_NAME, _LS_BEFORE_VALUE,
 _LS_VALUE, _LS_ESCAPE, _LS_AFTER_VALUE) = range(7)


def _scan_label_block(text: str, pos: int) -> Tuple[Dict[str, str], int]:
    """Scan label pairs starting at text[pos] (the character after '{').

    Character-level state machine; quote state is tracked so ',' '{' '}'
    inside a quoted value are literal. Returns (labels, index just past the
    closing '}'). Duplicate names: last one wins.
    """
    labels: Dict[str, str] = {}
    state = _LS_BEFORE_NAME
    name: List[str] = []
    value: List[str] = []
    i = pos
    n = len(text)
    while i < n:
        ch = text[i]
        if state == _LS_BEFORE_NAME:
            if ch == '}':
                return labels, i + 1
            if ch in NAME_START_CHARS:
                name = [ch]
                state = _LS_NAME
            elif not ch.isspace():
                raise LineParseError(f'unexpected {ch!r} at {i}, expected label name')
        elif state == _LS_NAME:
            if ch in NAME_CHARS:
                name.append(ch)
            elif ch == '=':
                state = _LS_BEFORE_VALUE
            elif ch.isspace():
                state = _LS_AFTER_NAME
            else:
                raise LineParseError(f'invalid character {ch!r} in label name at {i}')
        elif state == _LS_AFTER_NAME:
            if ch == '=':
                state = _LS_BEFORE_VALUE
            elif not ch.isspace():
                raise LineParseError(f'expected "=" at {i}')
        elif state == _LS_BEFORE_VALUE:
            if ch == '"':
                value = []
                state = _LS_VALUE
            elif not ch.isspace():
                raise LineParseError(f'expected quoted label value at {i}')
        elif state == _LS_VALUE:
            if ch == '\\':
                state = _LS_ESCAPE
            elif ch == '"':
                labels[''.join(name)] = ''.join(value)
                state = _LS_AFTER_VALUE
            else:
                value.append(ch)
        elif state == _LS_ESCAPE:
            value.append(_ESCAPES.get(ch, '\\' + ch))
            state = _LS_VALUE
        else:  # _LS_AFTER_VALUE
            if ch == ',':
                state = _LS_BEFORE_NAME
            elif ch == '}':
                return labels, i + 1
            elif not ch.isspace():
                raise LineParseError(f'expected "," or "}}" at {i}')
        i += 1
    raise LineParseError('unterminated label block')


def parse_label_block(body: str) -> Dict[str, str]:
    """Parse the text between '{' and its matching '}' (both excluded)."""
    labels, end = _scan_label_block(body + '}', 0)
    if end != len(body) + 1:
        raise LineParseError('unexpected "}" inside label block')
    return labels


def parse_sample_line(line: str) -> Tuple[str, Dict[str, str], float]:
    """Parse `name[{labels}] value [timestamp]` into (name, labels, value).

    The timestamp, when present, must be an integer; it is dropped.
    """
    m = METRIC_NAME_RE.match(line)
    if not m:
        raise LineParseError('invalid metric name')
    name = m.group(0)
    name_end = pos = m.end()
    n = len(line)
    while pos < n and line[pos].isspace():
        pos += 1
    labels: Dict[str, str] = {}
    if pos < n and line[pos] == '{':
        labels, pos = _scan_label_block(line, pos + 1)
    elif pos == name_end and pos < n:
        raise LineParseError(f'invalid character {line[pos]!r} in metric name')
    tokens = line[pos:].split()
    if not tokens:
        raise LineParseError('missing sample value')
    if len(tokens) > 2:
        raise LineParseError(f'unexpected trailing tokens {tokens[2:]!r}')
    value = normalize_value(tokens[0])
    if len(tokens) == 2 and not TIMESTAMP_RE.match(tokens[1]):
        raise LineParseError(f'invalid timestamp {tokens[1]!r}')
    return name, labels, value


def _unescape_help(text: str) -> str:
    out: List[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == '\\' and i + 1 < n:
            nxt = text[i + 1]
            if nxt == '\\':
                out.append('\\')
                i += 2
                continue
            if nxt == 'n':
                out.append('\n')
                i += 2
                continue
        out.append(ch)
        i += 1
    return ''.join(out)


def parse_directive(line: str) -> Tuple[str, str, str]:
    """Parse a '# HELP' / '# TYPE' line into (kind, name, payload).

    kind is 'HELP' or 'TYPE'. For HELP the payload is the decoded help text
    (may be empty); for TYPE it is the raw type token.
    """
    kind = line[2:6]
    rest = line[6:].strip()
    m = METRIC_NAME_RE.match(rest)
    if not m:
        raise LineParseError(f'{kind} directive without metric name')
    name = m.group(0)
    tail = rest[m.end():]
    if tail and not tail[0].isspace():
        raise LineParseError(f'invalid character {tail[0]!r} in {kind} metric name')
    tail = tail.strip()
    if kind == 'HELP':
        return kind, name, _unescape_help(tail)
    tokens = tail.split()
    if not tokens:
        raise LineParseError('TYPE directive without type')
    return kind, name, tokens[0]


def _is_directive(line: str) -> bool:
    head = line[:6]
    return head in ('# HELP', '# TYPE') and (len(line) == 6 or line[6] == ' ')


def coerce_text(payload: Union[str, bytes, bytearray]) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        try:
            return bytes(payload).decode('utf-8-sig')
        except UnicodeDecodeError as e:
            raise MetricsDecodeError(f'metrics payload is not valid UTF-8: {e}') from e
    raise MetricsDecodeError(f'expected metrics text, got {type(payload).__name__}')


class ExpositionParser:
    def __init__(self, text: Union[str, bytes]):
        """ExpositionParser

        One instance parses one payload. The metadata table and the group
        lists are rebuilt on every parse() call; only stats() survives it.
        """
        self._text = coerce_text(text)
        self._stats = ParseStats()
        self._metadata: Dict[str, MetricFamilyMetadata] = {}

    @staticmethod
    def _metric_group(name: str) -> str:
        """Map a metric name to its output group (case-sensitive prefix, first match)."""
        if name.startswith('process_'):
            return GROUP_PROCESS
        if name.startswith('nodejs_'):
            return GROUP_NODE
        if name.startswith('http_'):
            return GROUP_HTTP
        return GROUP_CUSTOM

    @staticmethod
    def family_root_name(name: str, metadata: Dict[str, MetricFamilyMetadata]) -> str:
        """Key used for the metadata lookup of `name`.

        A _bucket/_sum/_count suffix is stripped when the root was declared;
        otherwise the full name is used, so plain counters/gauges match directly.
        """
        for suffix in FAMILY_SUFFIXES:
            if name.endswith(suffix) and len(name) > len(suffix):
                root = name[:-len(suffix)]
                if root in metadata:
                    return root
                break
        return name

    def classify(self, name: str, labels: Dict[str, str], value: float,
                 metadata: Dict[str, MetricFamilyMetadata]) -> Tuple[str, MetricSample]:
        entry = metadata.get(self.family_root_name(name, metadata))
        sample = MetricSample(
            name=name,
            value=value,
            labels=labels,
            help=entry.help if entry else None,
            type=entry.type if entry else None,
        )
        return self._metric_group(name), sample

    def iter_lines(self) -> Iterator[Tuple[str, int, str]]:
        """Yield (kind, line_no, stripped_line) for every non-blank line."""
        for line_no, raw in enumerate(self._text.split('\n'), start=1):
            self._stats.lines_total += 1
            line = raw.rstrip('\r').strip()
            if not line:
                self._stats.blank_lines += 1
                continue
            if line.startswith('#'):
                if _is_directive(line):
                    self._stats.directive_lines += 1
                    yield LINE_DIRECTIVE, line_no, line
                else:
                    self._stats.comment_lines += 1
                continue
            self._stats.sample_lines += 1
            yield LINE_SAMPLE, line_no, line

    def iter_classified(self) -> Iterator[Tuple[str, MetricSample]]:
        """Single pass over the text yielding (group, sample) in encounter order."""
        self._stats = ParseStats()
        metadata: Dict[str, MetricFamilyMetadata] = {}
        for kind, line_no, line in self.iter_lines():
            try:
                if kind == LINE_DIRECTIVE:
                    directive, name, payload = parse_directive(line)
                    entry = metadata.setdefault(name, MetricFamilyMetadata(name))
                    if directive == 'HELP':
                        entry.help = payload
                    else:
                        entry.type_token = payload
                        entry.type = _TYPE_TOKENS.get(payload, MetricType.UNKNOWN)
                        if entry.type is MetricType.UNKNOWN:
                            dbg(f'parser unknown TYPE line={line_no} name={name} token={entry.type_token!r}', PARSER_DEBUG_FLAG)
                    continue
                name, labels, value = parse_sample_line(line)
            except LineParseError as e:
                self._stats.skipped_lines += 1
                dbg(f'parser skip line={line_no} reason={e} text={line[:120]!r}', PARSER_DEBUG_FLAG)
                continue
            self._stats.samples_emitted += 1
            yield self.classify(name, labels, value, metadata)
        self._metadata = metadata

    def parse(self) -> ParsedMetrics:
        grouped: Dict[str, List[MetricSample]] = {g: [] for g in GROUPS}
        for group, sample in self.iter_classified():
            grouped[group].append(sample)
        dbg(f'parser done stats={self._stats.as_dict()}', PARSER_DEBUG_FLAG)
        return ParsedMetrics(
            process_metrics=tuple(grouped[GROUP_PROCESS]),
            node_metrics=tuple(grouped[GROUP_NODE]),
            http_metrics=tuple(grouped[GROUP_HTTP]),
            custom_metrics=tuple(grouped[GROUP_CUSTOM]),
        )

    def stats(self) -> Dict[str, int]:
        return self._stats.as_dict()

    def metadata(self) -> Dict[str, Dict[str, Optional[str]]]:
        """HELP/TYPE table as left by the last parse; type_token is the raw TYPE word."""
        return {
            name: {
                'help': m.help,
                'type': m.type.value if m.type else None,
                'type_token': m.type_token,
            }
            for name, m in self._metadata.items()
        }


def parse_prometheus_metrics(text: Union[str, bytes]) -> ParsedMetrics:
    """Parse one exposition payload into grouped, metadata-annotated samples."""
    return ExpositionParser(text).parse()
