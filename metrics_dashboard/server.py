from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from metrics_dashboard import mcp_app
from metrics_dashboard.ingestion.parser import MetricsDecodeError
from metrics_dashboard.ingestion.loader import MetricsFetchError, MetricsFileError
from metrics_dashboard.debug_util import dbg

"""REST shim over the same operations the MCP tools expose.

Useful for the dashboard front-end and for curl; responses mirror the tool
dicts, wrapped in small pydantic models where the shape is fixed.
"""

app = FastAPI(title="metrics-dashboard-shim")


def _tool(t):
    return getattr(t, 'fn', t)

# ----------------- API Models -----------------

class ParseRequest(BaseModel):
    text: str
    include_samples: bool = True

class LoadRequest(BaseModel):
    source: Optional[str] = None

class SampleOut(BaseModel):
    name: str
    value: Any  # float, or '+Inf' / '-Inf' / 'NaN'
    labels: Dict[str, str] = {}
    help: Optional[str] = None
    type: Optional[str] = None

class GroupedMetrics(BaseModel):
    processMetrics: List[SampleOut] = []
    nodeMetrics: List[SampleOut] = []
    httpMetrics: List[SampleOut] = []
    customMetrics: List[SampleOut] = []

class ParseResponse(BaseModel):
    counts: Dict[str, int]
    total: int
    stats: Dict[str, int]
    metrics: Optional[GroupedMetrics] = None

class LoadResponse(BaseModel):
    source: str
    kind: str
    loaded_at_ms: int
    bytes: int
    counts: Dict[str, int]
    total: int
    stats: Dict[str, int]
    replaced_previous: bool
    duration_ms: int

# ----------------- Routes -----------------

@app.get("/")
def root():
    return {"status": "ok", "service": "metrics-dashboard-shim"}

@app.get("/healthz")
def healthz():
    return _tool(mcp_app.healthz)()

@app.post("/metrics/parse", response_model=ParseResponse)
def parse_metrics(body: ParseRequest):
    try:
        return mcp_app._parse_metrics_impl(body.text, include_samples=body.include_samples)
    except MetricsDecodeError as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.post("/metrics/load", response_model=LoadResponse)
def load_metrics(body: LoadRequest):
    try:
        return mcp_app._load_metrics_source_impl(body.source)
    except MetricsFetchError as e:
        dbg(f'api load_metrics fetch_failed source={body.source} status={e.status}')
        raise HTTPException(status_code=502, detail=str(e))
    except (MetricsFileError, MetricsDecodeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.get("/metrics/active")
def active_snapshot(group: Optional[str] = None, name_prefix: Optional[str] = None, limit: int = mcp_app.DEFAULT_LIMIT):
    try:
        return mcp_app._active_snapshot_impl(group=group, name_prefix=name_prefix, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.delete("/metrics/active")
def unload_metrics():
    return _tool(mcp_app.unload_metrics)()

@app.get("/metrics/summary")
def dashboard_summary(limit: int = 10, hostname_search: Optional[str] = None):
    body = _tool(mcp_app.dashboard_summary)(limit=limit, hostname_search=hostname_search)
    if not body.get('loaded'):
        raise HTTPException(status_code=404, detail='no active metrics snapshot')
    return body

@app.get("/metrics/raw")
def raw_metrics(max_chars: int = 20000):
    body = _tool(mcp_app.raw_metrics)(max_chars=max_chars)
    if not body.get('loaded'):
        raise HTTPException(status_code=404, detail='no active metrics snapshot')
    return body
