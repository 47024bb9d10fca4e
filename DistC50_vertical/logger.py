"""
logger.py

Centralized logging helpers with sanitization so masks, partial sums and raw
attribute values never reach the log.
"""

import logging
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger("DistC50")

_SENSITIVE_KEYS = {
    "secret", "seed", "token", "mask", "random_mask",
    "partial_sum", "partial_sums", "local_counts", "values", "rows", "assignments",
}


def _sanitize(obj: Any) -> Any:
    """
    Recursively sanitize common containers to avoid logging secrets.
    """
    try:
        if isinstance(obj, dict):
            out = {}
            for k, v in obj.items():
                if str(k).lower() in _SENSITIVE_KEYS:
                    out[k] = "<REDACTED>"
                else:
                    out[k] = _sanitize(v)
            return out
        elif isinstance(obj, (list, tuple)):
            return type(obj)(_sanitize(x) for x in obj)
        else:
            return obj
    except Exception:
        return "<UNSANITIZABLE>"


def secure_log(level: str, msg: str, **kwargs):
    """
    Log while sanitizing kwargs.
    Example: secure_log('info', 'round complete', node_id='root', partial_sums=[...])
    """
    lg = getattr(logger, level.lower(), logger.info)
    sanitized = {k: ("<REDACTED>" if k.lower() in _SENSITIVE_KEYS else _sanitize(v)) for k, v in kwargs.items()}
    if sanitized:
        lg(msg + " | " + str(sanitized))
    else:
        lg(msg)


def set_level(level: str):
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
