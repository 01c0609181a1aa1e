import json
import logging
import re
import functools
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Generator, Iterable, List, Optional

from google.api_core.exceptions import AlreadyExists, Forbidden, NotFound
from google.cloud import storage
from google.cloud.bigtable import column_family as bt_column_family
from google.cloud.bigtable import row_filters
from google.cloud.exceptions import GoogleCloudError
from google.rpc import code_pb2

from registry import ClientRegistry, InstanceNotFoundError

logger = logging.getLogger(__name__)

# Bigtable naming rules
_TABLE_ID_RE = re.compile(r"[_a-zA-Z0-9][-_.a-zA-Z0-9]{0,49}")
_FAMILY_RE = re.compile(r"[_a-zA-Z0-9][-_.a-zA-Z0-9]{0,63}")

GENERIC_ERROR_MESSAGE = "Internal server error while talking to Bigtable"


def validate_table_id(name: str) -> bool:
    """
    Validate a Bigtable table id:
    - 1 to 50 chars
    - Starts with letter, digit or underscore
    - Contains only letters, digits, underscores, hyphens, dots
    """
    return isinstance(name, str) and bool(_TABLE_ID_RE.fullmatch(name))


def validate_column_family(name: str) -> bool:
    """Same alphabet as table ids, up to 64 chars."""
    return isinstance(name, str) and bool(_FAMILY_RE.fullmatch(name))


class OperationStatus(str, Enum):
    SUCCESS = "success"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    VALIDATION_FAILURE = "validation_failure"
    FORBIDDEN = "forbidden"
    ERROR = "error"


@dataclass(frozen=True)
class OperationResult:
    status: OperationStatus
    value: Any = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is OperationStatus.SUCCESS

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "OperationResult":
        return cls(OperationStatus.SUCCESS, value, message)

    @classmethod
    def not_found(cls, message: str) -> "OperationResult":
        return cls(OperationStatus.NOT_FOUND, message=message)

    @classmethod
    def invalid(cls, message: str) -> "OperationResult":
        return cls(OperationStatus.VALIDATION_FAILURE, message=message)


@dataclass(frozen=True)
class CellWrite:
    column_family: str
    column_name: str
    column_value: str


def _guarded(action: str) -> Callable:
    """
    Translate exceptions escaping an operation into an OperationResult.

    InstanceNotFoundError and NotFound become NOT_FOUND, Forbidden becomes
    FORBIDDEN. Anything else is logged with traceback and reported as ERROR
    with a generic message.
    """
    def decorator(func: Callable[..., OperationResult]) -> Callable[..., OperationResult]:
        @functools.wraps(func)
        def wrapper(self, instance_id: str, *args, **kwargs) -> OperationResult:
            try:
                return func(self, instance_id, *args, **kwargs)
            except InstanceNotFoundError as e:
                logger.warning(f"{action} rejected: {e}")
                return OperationResult.not_found(str(e))
            except NotFound as e:
                logger.info(f"{action} | instance={instance_id} | not found: {e.message}")
                return OperationResult.not_found("NOT FOUND")
            except Forbidden as e:
                logger.error(f"{action} | instance={instance_id} | permission denied: {e.message}")
                return OperationResult(OperationStatus.FORBIDDEN, message="Permission denied")
            except Exception as e:
                logger.error(
                    f"Unexpected error during {action} | instance={instance_id}: {str(e)}",
                    exc_info=True,
                )
                return OperationResult(OperationStatus.ERROR, message=GENERIC_ERROR_MESSAGE)
        return wrapper
    return decorator


def _latest_cells(row) -> Dict[str, Dict[str, str]]:
    """Newest value per (family, qualifier) of a PartialRowData."""
    result: Dict[str, Dict[str, str]] = {}
    for family, columns in row.cells.items():
        result[family] = {
            _decode(qualifier): _decode(cells[0].value)
            for qualifier, cells in columns.items()
            if cells
        }
    return result


def _decode(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class BigtableOperations:
    """
    Table and row operations across the instances of a ClientRegistry.

    Every public method returns an OperationResult; callers decide how to
    present each status.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        column_family: str,
        column_qualifier: str,
        max_scan_limit: int = 100_000,
        storage_client_factory: Callable[[], Any] = storage.Client,
    ):
        self.registry = registry
        self.column_family = column_family
        self.column_qualifier = column_qualifier
        self.max_scan_limit = max_scan_limit
        self._storage_client_factory = storage_client_factory

    # ------------------------------------------------------------------
    # Table management
    # ------------------------------------------------------------------

    @_guarded("create table")
    def create_table(self, instance_id: str, table_name: str, column_family: str) -> OperationResult:
        if not validate_table_id(table_name):
            return OperationResult.invalid(f"Invalid table name: {table_name}")
        if not validate_column_family(column_family):
            return OperationResult.invalid(f"Invalid column family: {column_family}")

        table = self.registry.admin(instance_id).table(table_name)
        if table.exists():
            logger.info(f"Table already exists | instance={instance_id} | table={table_name}")
            return OperationResult(
                OperationStatus.ALREADY_EXISTS,
                message="Table with same name exists in bigtable already",
            )

        logger.info(
            f"Creating table | instance={instance_id} | table={table_name} | family={column_family}"
        )
        try:
            table.create(
                column_families={column_family: bt_column_family.MaxVersionsGCRule(1)}
            )
        except AlreadyExists:
            # Lost a race with a concurrent create
            return OperationResult(
                OperationStatus.ALREADY_EXISTS,
                message="Table with same name exists in bigtable already",
            )
        logger.info(f"Table created successfully | instance={instance_id} | table={table_name}")
        return OperationResult.success()

    @_guarded("delete table")
    def delete_table(self, instance_id: str, table_name: str) -> OperationResult:
        """NOT_FOUND here is informational: deleting a missing table is a no-op."""
        logger.info(f"Deleting table | instance={instance_id} | table={table_name}")
        if not validate_table_id(table_name):
            return OperationResult.invalid(f"Invalid table name: {table_name}")
        try:
            self.registry.admin(instance_id).table(table_name).delete()
        except NotFound:
            logger.warning(
                f"Tried to delete a non-existent table | instance={instance_id} | table={table_name}"
            )
            return OperationResult.not_found(f"Table '{table_name}' does not exist")
        logger.info(f"Table deleted successfully | instance={instance_id} | table={table_name}")
        return OperationResult.success()

    def delete_tables(self, instance_id: str, table_names: List[str]) -> OperationResult:
        """
        Delete every table in order. Missing tables are skipped.

        Returns SUCCESS with {"deleted": [...], "missing": [...]}, or the
        first non-tolerated failure.
        """
        if not table_names:
            logger.info("Refusing table deletion with an empty table list")
            return OperationResult.invalid("tableList must contain at least one table")
        invalid = [name for name in table_names if not validate_table_id(name)]
        if invalid:
            return OperationResult.invalid(f"Invalid table names: {invalid}")
        if instance_id not in self.registry:
            return OperationResult.not_found(str(InstanceNotFoundError(instance_id)))

        deleted: List[str] = []
        missing: List[str] = []
        for table_name in table_names:
            result = self.delete_table(instance_id, table_name)
            if result.ok:
                deleted.append(table_name)
            elif result.status is OperationStatus.NOT_FOUND:
                missing.append(table_name)
            else:
                return result
        return OperationResult.success({"deleted": deleted, "missing": missing})

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    @_guarded("write row")
    def write_row(
        self,
        instance_id: str,
        table_name: str,
        row_key: str,
        cells: Iterable[CellWrite],
    ) -> OperationResult:
        """
        Set every cell on one row with a single MutateRow call.

        All cells are applied atomically: either the whole row mutation
        lands or none of it does.
        """
        cells = list(cells)
        if not validate_table_id(table_name):
            return OperationResult.invalid(f"Invalid table name: {table_name}")
        if not row_key:
            return OperationResult.invalid("rowKeyId must not be empty")
        if not cells:
            return OperationResult.invalid("data must contain at least one column")

        handles = self.registry.get(instance_id)
        if not handles.admin.table(table_name).exists():
            logger.info(
                f"Tried to insert data into missing table | instance={instance_id} | table={table_name}"
            )
            return OperationResult.not_found(
                "Tried to insert data into table that doesn't exist"
            )

        row = handles.data.table(table_name).direct_row(row_key.encode("utf-8"))
        for cell in cells:
            row.set_cell(cell.column_family, cell.column_name.encode("utf-8"), cell.column_value)

        status = row.commit()
        code = getattr(status, "code", code_pb2.OK)
        if code == code_pb2.NOT_FOUND:
            logger.info(
                f"MutateRow rejected | table={table_name} | row={row_key}: {status.message}"
            )
            return OperationResult.not_found(status.message or "NOT FOUND")
        if code != code_pb2.OK:
            raise RuntimeError(f"MutateRow failed with code={code}: {status.message}")

        logger.info(
            f"Wrote {len(cells)} cell(s) | instance={instance_id} | "
            f"table={table_name} | row={row_key}"
        )
        return OperationResult.success()

    @_guarded("read cell")
    def read_cell(
        self,
        instance_id: str,
        table_name: str,
        row_key: str,
        column_family: Optional[str] = None,
        column_qualifier: Optional[str] = None,
    ) -> OperationResult:
        family = column_family or self.column_family
        qualifier = column_qualifier or self.column_qualifier
        if not validate_table_id(table_name):
            return OperationResult.invalid(f"Invalid table name: {table_name}")
        if not row_key:
            return OperationResult.invalid("id must not be empty")

        logger.info(
            f"Reading cell | instance={instance_id} | table={table_name} | row={row_key}"
        )
        row = self.registry.data(instance_id).table(table_name).read_row(row_key.encode("utf-8"))
        if row is None:
            logger.info(f"No data for table={table_name} | row={row_key}")
            return OperationResult.not_found("NOT FOUND")

        cells = row.cells.get(family, {}).get(qualifier.encode("utf-8"), [])
        if not cells:
            logger.info(
                f"Row has no {family}:{qualifier} cell | table={table_name} | row={row_key}"
            )
            return OperationResult.not_found("NOT FOUND")

        return OperationResult.success(_decode(cells[0].value))

    # ------------------------------------------------------------------
    # Scans (always bounded)
    # ------------------------------------------------------------------

    def _check_limit(self, limit: int) -> Optional[OperationResult]:
        if not isinstance(limit, int) or limit <= 0:
            return OperationResult.invalid("limit must be a positive integer")
        if limit > self.max_scan_limit:
            return OperationResult.invalid(f"limit must not exceed {self.max_scan_limit}")
        return None

    @_guarded("count rows")
    def count_rows(self, instance_id: str, table_name: str, limit: int) -> OperationResult:
        """
        Count up to `limit` rows of a table.

        Only the first cell of each row is fetched and values are stripped,
        so the scan transfers row keys only. Returns
        {"tableName", "count", "limit", "truncated"}.
        """
        rejected = self._check_limit(limit)
        if rejected:
            return rejected
        if not validate_table_id(table_name):
            return OperationResult.invalid(f"Invalid table name: {table_name}")

        keys_only = row_filters.RowFilterChain(
            filters=[
                row_filters.CellsRowLimitFilter(1),
                row_filters.StripValueTransformerFilter(True),
            ]
        )
        # Ask for one extra row to tell "exactly limit" from "more than limit"
        rows = self.registry.data(instance_id).table(table_name).read_rows(
            limit=limit + 1, filter_=keys_only
        )
        count = sum(1 for _ in rows)
        truncated = count > limit
        count = min(count, limit)

        logger.info(
            f"Counted rows | instance={instance_id} | table={table_name} | "
            f"count={count} | truncated={truncated}"
        )
        return OperationResult.success(
            {"tableName": table_name, "count": count, "limit": limit, "truncated": truncated}
        )

    @_guarded("stream rows")
    def stream_rows_jsonl(
        self,
        instance_id: str,
        table_name: str,
        limit: int,
        start_key: Optional[str] = None,
    ) -> OperationResult:
        """
        Prepare a JSONL stream of up to `limit` rows starting at `start_key`.

        The table is checked before streaming starts so a missing table is
        reported as NOT_FOUND. SUCCESS carries a generator of JSON lines.
        """
        rejected = self._check_limit(limit)
        if rejected:
            return rejected
        if not validate_table_id(table_name):
            return OperationResult.invalid(f"Invalid table name: {table_name}")

        handles = self.registry.get(instance_id)
        if not handles.admin.table(table_name).exists():
            return OperationResult.not_found(f"Table '{table_name}' does not exist")

        table = handles.data.table(table_name)
        return OperationResult.success(
            self._iter_jsonl(instance_id, table, table_name, limit, start_key)
        )

    def _iter_jsonl(
        self,
        instance_id: str,
        table,
        table_name: str,
        limit: int,
        start_key: Optional[str],
    ) -> Generator[str, None, None]:
        start = start_key.encode("utf-8") if start_key else None
        row_count = 0
        logger.info(f"Starting row stream | instance={instance_id} | table={table_name}")
        try:
            for row in table.read_rows(start_key=start, limit=limit):
                yield json.dumps(
                    {"rowKey": _decode(row.row_key), "cells": _latest_cells(row)},
                    ensure_ascii=False,
                ) + "\n"
                row_count += 1
        except GoogleCloudError as e:
            logger.critical(f"Row stream failed for {table_name} after {row_count} rows: {str(e)}")
            raise RuntimeError("Bigtable error during row stream") from e
        logger.info(f"Completed row stream for {table_name}: {row_count} rows")

    ###########################################################
    # GCS EXPORT
    ###########################################################

    @_guarded("export rows to GCS")
    def export_rows_to_gcs(
        self,
        instance_id: str,
        table_name: str,
        bucket_name: str,
        limit: int,
        folder_prefix: str = "exports",
    ) -> OperationResult:
        """
        Write up to `limit` rows of a table to GCS as JSONL.

        Path: {folder_prefix}/{instance}/{table}/YYYY-MM-DD/rows_<HHMMSS>.jsonl

        Returns SUCCESS with export metadata:
        {
            "gcs_uri": "gs://bucket/...",
            "rows_exported": 1234,
            "file_size_mb": 5.67,
            ...
        }
        A partially written blob is deleted when the export fails.
        """
        if not bucket_name:
            return OperationResult.invalid("bucketName is required for GCS export")

        streamed = self.stream_rows_jsonl(instance_id, table_name, limit)
        if not streamed.ok:
            return streamed

        bucket = self._storage_client_factory().bucket(bucket_name)
        if not bucket.exists():
            return OperationResult.invalid(
                f"GCS bucket '{bucket_name}' does not exist or is not accessible"
            )

        timestamp = datetime.now(timezone.utc)
        blob_path = (
            f"{folder_prefix.strip('/')}/"
            f"{instance_id}/"
            f"{table_name}/"
            f"{timestamp.strftime('%Y-%m-%d')}/"
            f"rows_{timestamp.strftime('%H%M%S')}.jsonl"
        )
        blob = bucket.blob(blob_path)
        logger.info(f"Starting GCS export: gs://{bucket_name}/{blob_path}")

        rows_exported = 0
        try:
            with blob.open(mode="w", content_type="application/x-ndjson") as gcs_file:
                for line in streamed.value:
                    gcs_file.write(line)
                    rows_exported += 1
                    if rows_exported % 10_000 == 0:
                        logger.info(f"GCS export progress: {rows_exported:,} rows written")
        except Exception:
            self._discard_partial_blob(blob, blob_path)
            raise

        blob.reload()
        file_size_mb = blob.size / (1024 ** 2) if blob.size else 0
        logger.info(
            f"GCS export complete: {blob_path} | {rows_exported:,} rows | {file_size_mb:.2f} MB"
        )
        return OperationResult.success({
            "gcs_uri": f"gs://{bucket_name}/{blob_path}",
            "bucket_name": bucket_name,
            "blob_name": blob_path,
            "rows_exported": rows_exported,
            "file_size_mb": round(file_size_mb, 2),
            "instance_id": instance_id,
            "table_name": table_name,
            "timestamp": timestamp.isoformat(),
            "content_type": "application/x-ndjson",
        })

    @staticmethod
    def _discard_partial_blob(blob, blob_path: str) -> None:
        try:
            if blob.exists():
                blob.delete()
                logger.info(f"Cleaned up partial file: {blob_path}")
        except GoogleCloudError as e:
            logger.warning(f"Could not clean up partial file {blob_path}: {e}")
