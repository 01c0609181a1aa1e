from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
import logging
from bigtable_ops import BigtableOperations, CellWrite, OperationResult, OperationStatus
from config import (
    CORS_ORIGINS,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_READ,
    RATE_LIMIT_WRITE,
    load_settings,
)
from registry import ClientRegistry
from security import get_current_user, get_user_id_from_token
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

# Initialize the API App
app = FastAPI(
    title="Bigtable KV API",
    description="REST facade over Google Cloud Bigtable tables and cells",
    version="1.0.0"
)
logger = logging.getLogger("uvicorn")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate Limiter
def get_user_identifier(request: Request) -> str:
    """Rate-limit key: JWT subject when verifiable, else client IP."""
    settings = getattr(request.app.state, "settings", None)
    auth_header = request.headers.get("Authorization")
    if settings is not None and settings.auth_enabled and auth_header and auth_header.startswith("Bearer "):
        user_id = get_user_id_from_token(auth_header[7:], settings)
        if user_id:
            return f"user:{user_id}"

    client_ip = request.client.host if request.client else "unknown_ip"
    return f"ip:{client_ip}"

limiter = Limiter(key_func=get_user_identifier, enabled=RATE_LIMIT_ENABLED)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Lifecycle Events
@app.on_event("startup")
async def startup_event():
    """Build the client registry before serving requests. Fails fast."""
    settings = load_settings()
    registry = ClientRegistry.from_settings(settings)
    app.state.settings = settings
    app.state.operations = BigtableOperations(
        registry,
        column_family=settings.column_family,
        column_qualifier=settings.column_qualifier,
        max_scan_limit=settings.max_scan_limit,
    )
    logger.info(
        f"Application startup complete | project={settings.project_id} | "
        f"instances={list(registry.instance_ids)}"
    )

@app.on_event("shutdown")
async def shutdown_event():
    """Release Bigtable channels during shutdown."""
    operations = getattr(app.state, "operations", None)
    if operations:
        operations.registry.close()
    logger.info("Clean shutdown complete")


def get_operations(request: Request) -> BigtableOperations:
    """FastAPI dependency: the operations layer built at startup."""
    operations = getattr(request.app.state, "operations", None)
    if operations is None:
        raise HTTPException(status_code=503, detail="Service is not initialized")
    return operations


# Status mapping for failed operations
_ERROR_STATUS_CODES = {
    OperationStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    OperationStatus.VALIDATION_FAILURE: status.HTTP_400_BAD_REQUEST,
    OperationStatus.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    OperationStatus.ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

def raise_for_result(result: OperationResult) -> None:
    """Turn a failed OperationResult into an HTTPException."""
    status_code = _ERROR_STATUS_CODES.get(result.status)
    if status_code is not None:
        raise HTTPException(status_code=status_code, detail=result.message)


# Request models
class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateTableRequest(_CamelModel):
    table_name: str = Field(..., alias="tableName", description="Bigtable table id")
    column_family: str = Field(..., alias="columnFamily", description="Column family created with the table")


class TableConfig(_CamelModel):
    table_list: List[str] = Field(default_factory=list, alias="tableList", description="Tables to delete")


class ColumnData(_CamelModel):
    column_family: str = Field(..., alias="columnFamily")
    column_name: str = Field(..., alias="columnName")
    column_value: str = Field(..., alias="columnValue")


class BigtableTableData(_CamelModel):
    table_name: str = Field(..., alias="tableName")
    row_key_id: str = Field(..., alias="rowKeyId", min_length=1)
    data: List[ColumnData] = Field(..., min_length=1, description="Cells written atomically to the row")


class GCSExportRequest(_CamelModel):
    table_name: str = Field(..., alias="tableName")
    bucket_name: str = Field(..., alias="bucketName", description="GCS bucket name (e.g., 'kv-exports')")
    folder_prefix: str = Field(default="exports", alias="folderPrefix", description="Folder prefix in bucket")
    limit: Optional[int] = Field(default=None, gt=0, description="Max rows to export")


# Health Check Endpoint
@app.get("/")
@limiter.limit(RATE_LIMIT_READ)
async def health_check(request: Request):
    """Liveness endpoint for Cloud Run health checks."""
    return {
        "status": "healthy",
        "service": "bigtable-kv-api",
        "version": "1.0.0",
        "features": ["table_admin", "cell_read", "row_write", "row_scan", "gcs_export"]
    }


# List Instances Endpoint
@app.get("/v1/instances")
@limiter.limit(RATE_LIMIT_READ)
def list_instances(
    request: Request,
    operations: BigtableOperations = Depends(get_operations),
    current_user: dict = Depends(get_current_user)
):
    """List the Bigtable instances this service is configured for."""
    instance_ids = list(operations.registry.instance_ids)
    return {"instances": instance_ids, "count": len(instance_ids)}


# Read Cell Endpoint
@app.get("/v1/{instanceID}/readCellData", response_class=PlainTextResponse)
@limiter.limit(RATE_LIMIT_READ)
def read_cell_data(
    request: Request,
    instanceID: str,
    tableName: str = Query(..., description="Table to read from"),
    id: str = Query(..., description="Row key"),
    operations: BigtableOperations = Depends(get_operations),
    current_user: dict = Depends(get_current_user)
):
    """Return the configured column family/qualifier cell of a row as text."""
    logger.info(f"Reading cell | instance={instanceID} | table={tableName} | id={id}")
    result = operations.read_cell(instanceID, tableName, id)
    if not result.ok:
        # Error bodies stay text/plain like the success body
        status_code = _ERROR_STATUS_CODES.get(result.status, status.HTTP_500_INTERNAL_SERVER_ERROR)
        return PlainTextResponse(result.message, status_code=status_code)
    return PlainTextResponse(result.value)


# Create Table Endpoint
@app.post("/v1/{instanceID}/createTable")
@limiter.limit(RATE_LIMIT_WRITE)
def create_table(
    request: Request,
    instanceID: str,
    table: CreateTableRequest,
    operations: BigtableOperations = Depends(get_operations),
    current_user: dict = Depends(get_current_user)
):
    """Create a table with one column family. An existing table answers 208."""
    user_id = current_user.get("sub", "unknown")
    logger.info(
        f"Create table by user={user_id} | instance={instanceID} | "
        f"table={table.table_name} | family={table.column_family}"
    )
    result = operations.create_table(instanceID, table.table_name, table.column_family)
    if result.status is OperationStatus.ALREADY_EXISTS:
        return JSONResponse(
            status_code=status.HTTP_208_ALREADY_REPORTED,
            content={"success": False, "message": result.message}
        )
    raise_for_result(result)
    return {"success": True, "message": "Table created successfully"}


# Delete Tables Endpoint
@app.delete("/v1/{instanceID}/deleteTable")
@limiter.limit(RATE_LIMIT_WRITE)
def delete_table(
    request: Request,
    instanceID: str,
    table_config: TableConfig,
    operations: BigtableOperations = Depends(get_operations),
    current_user: dict = Depends(get_current_user)
):
    """Delete every listed table. Tables that do not exist are skipped."""
    user_id = current_user.get("sub", "unknown")
    logger.info(
        f"Delete tables by user={user_id} | instance={instanceID} | "
        f"tables={table_config.table_list}"
    )
    result = operations.delete_tables(instanceID, table_config.table_list)
    raise_for_result(result)
    return {"success": True, **result.value}


# Insert Row Endpoint
@app.post("/v1/{instanceID}/insertData")
@limiter.limit(RATE_LIMIT_WRITE)
def insert_data(
    request: Request,
    instanceID: str,
    table_data: BigtableTableData,
    operations: BigtableOperations = Depends(get_operations),
    current_user: dict = Depends(get_current_user)
):
    """Write all given cells to one row in a single atomic mutation."""
    logger.info(
        f"Writing row | instance={instanceID} | table={table_data.table_name} | "
        f"id={table_data.row_key_id} | cells={len(table_data.data)}"
    )
    cells = [
        CellWrite(column.column_family, column.column_name, column.column_value)
        for column in table_data.data
    ]
    result = operations.write_row(instanceID, table_data.table_name, table_data.row_key_id, cells)
    raise_for_result(result)
    return {"success": True, "message": "Row written successfully"}


# Row Count Endpoint
@app.get("/v1/{instanceID}/countRows")
@limiter.limit(RATE_LIMIT_READ)
def count_rows(
    request: Request,
    instanceID: str,
    tableName: str = Query(..., description="Table to count"),
    limit: Optional[int] = Query(None, ge=1, description="Stop counting after this many rows"),
    operations: BigtableOperations = Depends(get_operations),
    current_user: dict = Depends(get_current_user)
):
    """Bounded row count. `truncated` is true when the table holds more rows."""
    limit = limit or request.app.state.settings.default_scan_limit
    result = operations.count_rows(instanceID, tableName, limit)
    raise_for_result(result)
    return result.value


# Streaming Rows Endpoint
@app.get("/v1/{instanceID}/rows")
@limiter.limit(RATE_LIMIT_READ)
def stream_rows(
    request: Request,
    instanceID: str,
    tableName: str = Query(..., description="Table to scan"),
    startKey: Optional[str] = Query(None, description="First row key (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, description="Max rows to return"),
    operations: BigtableOperations = Depends(get_operations),
    current_user: dict = Depends(get_current_user)
):
    """Stream rows as JSONL, newest value per column."""
    limit = limit or request.app.state.settings.default_scan_limit
    user_id = current_user.get("sub", "unknown")
    logger.info(
        f"Row stream by user={user_id} | instance={instanceID} | "
        f"table={tableName} | start={startKey} | limit={limit}"
    )
    result = operations.stream_rows_jsonl(instanceID, tableName, limit, start_key=startKey)
    raise_for_result(result)
    return StreamingResponse(
        result.value,
        media_type="application/x-ndjson",
        headers={"X-Row-Limit": str(limit)}
    )


# GCS Export Endpoint
@app.post("/v1/{instanceID}/exportRows/gcs")
@limiter.limit(RATE_LIMIT_WRITE)
def export_rows_to_gcs(
    request: Request,
    instanceID: str,
    export_request: GCSExportRequest,
    operations: BigtableOperations = Depends(get_operations),
    current_user: dict = Depends(get_current_user)
):
    """Export up to `limit` rows of a table to a JSONL object in GCS."""
    limit = export_request.limit or request.app.state.settings.default_scan_limit
    user_id = current_user.get("sub", "unknown")
    logger.info(
        f"GCS export by user={user_id} | instance={instanceID} | "
        f"table={export_request.table_name} | bucket={export_request.bucket_name} | limit={limit}"
    )
    result = operations.export_rows_to_gcs(
        instanceID,
        export_request.table_name,
        export_request.bucket_name,
        limit,
        folder_prefix=export_request.folder_prefix,
    )
    raise_for_result(result)
    logger.info(
        f"GCS export succeeded: {result.value['gcs_uri']} | "
        f"{result.value['rows_exported']:,} rows"
    )
    return {
        "success": True,
        "message": "Export completed successfully",
        "export": result.value
    }
