from typing import TYPE_CHECKING

import redis.exceptions
from sqlalchemy.exc import DisconnectionError, OperationalError

if TYPE_CHECKING:
    from admissions_sync.schemas import VerificationResult


class AdmissionsSyncError(Exception):
    reason_code = "error"


class SchemaDriftError(AdmissionsSyncError):
    reason_code = "schema_drift"

    def __init__(self, table: str, result: "VerificationResult") -> None:
        self.table = table
        self.result = result
        details = []
        if result.missing:
            details.append("missing=" + ",".join(column.name for column in result.missing))
        if result.type_mismatches:
            details.append(
                "type_mismatch="
                + ",".join(f"{m.column}({m.expected}!={m.actual})" for m in result.type_mismatches)
            )
        super().__init__(f"schema drift on '{table}': {'; '.join(details)}")


class CommitError(AdmissionsSyncError):
    reason_code = "commit_failed"

    def __init__(self, sub_batch_index: int, cause: Exception) -> None:
        self.sub_batch_index = sub_batch_index
        self.cause = cause
        super().__init__(f"sub-batch {sub_batch_index} rolled back: {cause}")


class PurgeError(AdmissionsSyncError):
    reason_code = "purge_failed"

    def __init__(self, namespace: str, cursor: int, cause: Exception, purged: int = 0) -> None:
        self.namespace = namespace
        self.cursor = cursor
        self.cause = cause
        self.purged = purged
        super().__init__(f"purge of namespace '{namespace}' stopped at cursor {cursor}: {cause}")


class RunCancelledError(AdmissionsSyncError):
    reason_code = "cancelled"


TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    DisconnectionError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    ConnectionError,
    TimeoutError,
)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TRANSIENT_ERRORS)
