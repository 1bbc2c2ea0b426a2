from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import Enum

from solr_sync.models import ChangeEvent, Operation

LOGGER = logging.getLogger(__name__)

_INDEXABLE_OPERATIONS = frozenset({Operation.INSERT.value, Operation.UPDATE.value})


class RejectReason(str, Enum):
    FOREIGN_DATABASE = "foreign_database"
    UNSUPPORTED_TABLE = "unsupported_table"
    UNSUPPORTED_OPERATION = "unsupported_operation"
    MISSING_ROW_DATA = "missing_row_data"
    INVALID_ROW_ID = "invalid_row_id"


def is_positive_int(value: object) -> bool:
    # bool is an int subclass; a JSON true must not pass as id 1.
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


class EventFilter:
    """Decides whether a change event should trigger a re-index call."""

    def __init__(self, *, source_database: str, tables: Iterable[str]) -> None:
        self._source_database = source_database
        self._tables = frozenset(tables)
        if not self._tables:
            raise ValueError("tables must not be empty")

    def evaluate(self, event: ChangeEvent) -> RejectReason | None:
        if event.database != self._source_database:
            return RejectReason.FOREIGN_DATABASE
        if not isinstance(event.table, str) or event.table not in self._tables:
            return RejectReason.UNSUPPORTED_TABLE
        if not isinstance(event.operation, str) or event.operation not in _INDEXABLE_OPERATIONS:
            return RejectReason.UNSUPPORTED_OPERATION
        if event.row_data is None:
            return RejectReason.MISSING_ROW_DATA
        if not is_positive_int(event.row_id):
            return RejectReason.INVALID_ROW_ID
        return None

    def accept(self, event: ChangeEvent) -> bool:
        reason = self.evaluate(event)
        if reason is None:
            return True

        context = {
            "reason": reason.value,
            "database": event.database,
            "table": event.table,
            "operation": event.operation,
        }
        if reason in (RejectReason.MISSING_ROW_DATA, RejectReason.INVALID_ROW_ID):
            LOGGER.warning("event_rejected", extra={**context, "row_id": repr(event.row_id)})
        else:
            LOGGER.debug("event_rejected", extra=context)
        return False
