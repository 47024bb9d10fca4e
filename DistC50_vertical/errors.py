"""
errors.py

Error taxonomy shared by the secure-sum engine, the tree builder and the
node protocol layer.

- ConnectivityError: bind/connect/accept failures, lost connections, timeouts.
  Retried a bounded number of times where a retry makes sense, then fatal to the run.
- ProtocolSequenceError: message out of the expected round/state or not addressed
  to the receiver. Aborts the current tree node, never the process.
- SchemaMismatch: count inputs disagree in length or cardinality. The affected
  attribute is excluded from the comparison for that tree node.
- ProtocolStateError: contract violation (finalize by a non-initiator, incomplete
  ring, illegal node state transition). Always fatal.
- DataFormatError: malformed dataset / record input. Raised before any network I/O.
"""

from typing import Dict, Optional, Type


class C50Error(Exception):
    """Base class for every error raised by DistC50_vertical."""


class ConnectivityError(C50Error):
    pass


class ProtocolSequenceError(C50Error):
    pass


class SchemaMismatch(C50Error):
    pass


class ProtocolStateError(C50Error):
    pass


class DataFormatError(C50Error):
    pass


ERROR_KINDS: Dict[str, Type[C50Error]] = {
    cls.__name__: cls
    for cls in (ConnectivityError, ProtocolSequenceError, SchemaMismatch, ProtocolStateError, DataFormatError)
}


def error_kind(exc: BaseException) -> str:
    """Wire name for an exception; anything outside the taxonomy is reported generically."""
    for name, cls in ERROR_KINDS.items():
        if isinstance(exc, cls):
            return name
    return "C50Error"


def error_from_kind(kind: str, detail: Optional[str] = None) -> C50Error:
    """Rebuild the exception named by an Error message received from a peer."""
    cls = ERROR_KINDS.get(kind, C50Error)
    return cls(detail or kind)
