"""Domain errors raised by the reconciliation flows.

Remote failures arrive as ``RemoteCallError`` (``src.app.core.retry``);
the errors here describe problems with the data itself.
"""

from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""


class DuplicateReferenceError(ReconciliationError):
    """More than one target record claims the same source record.

    Recoverable: nothing is written, the flow fails, and a retry succeeds
    once the duplicates are cleaned up on the target side.
    """

    recoverable = True
    is_validation_error = True

    def __init__(self, kind: str, source_id: str, target_ids: list[str]) -> None:
        self.kind = kind
        self.source_id = source_id
        self.target_ids = target_ids
        super().__init__(
            f"Data integrity anomaly: {len(target_ids)} target records reference "
            f"{kind} {source_id} ({', '.join(target_ids)})"
        )


class RecordNotFoundError(ReconciliationError):
    """A record needed by the flow does not exist or lacks a required field."""

    is_validation_error = True

    def __init__(self, system: str, record_id: str, detail: str = "") -> None:
        self.system = system
        self.record_id = record_id
        message = f"{system} record {record_id} not found"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class WebhookVerificationError(Exception):
    """An inbound webhook failed authentication."""

    is_validation_error = True
