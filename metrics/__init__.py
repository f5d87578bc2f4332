"""
Observability and relay metrics.
"""

from metrics.relay_metrics import (
    get_snapshot,
    record_bytes_evicted,
    record_collaborator_failure,
    record_connection_close,
    record_connection_open,
    record_duplicate_trigger,
    record_short_turn_discarded,
    record_turn_accepted,
    record_turn_completed,
    record_turn_ignored,
    reset,
)

__all__ = [
    "get_snapshot",
    "record_bytes_evicted",
    "record_collaborator_failure",
    "record_connection_close",
    "record_connection_open",
    "record_duplicate_trigger",
    "record_short_turn_discarded",
    "record_turn_accepted",
    "record_turn_completed",
    "record_turn_ignored",
    "reset",
]
