import os, logging, sys

logger = logging.getLogger("metrics_dashboard")

def _ensure_logger():
    """Attach a basic StreamHandler if none present.

    Done lazily so importing the package leaves host application logging
    alone. The handler is only added once a debug line is actually emitted.
    """
    if logger.handlers:
        return
    logger.setLevel(logging.INFO)
    h = logging.StreamHandler(stream=sys.stdout)
    fmt = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
    h.setFormatter(fmt)
    logger.addHandler(h)

def debug_enabled(extra_flag: str = '') -> bool:
    if os.environ.get('DEBUG_VERBOSE') == '1':
        return True
    return bool(extra_flag) and os.environ.get(extra_flag) == '1'

def dbg(msg: str, flag: str = ''):
    """Emit a debug info line when DEBUG_VERBOSE=1 (or the given flag env var is 1).

    Parser tracing uses flag='DEBUG_METRICS_PARSER' so it can be switched on
    without the service-level chatter.
    """
    if debug_enabled(flag):
        _ensure_logger()
        logger.info('[debug] %s', msg)
