"""
Ledger Error → HTTP Mapping

- ValidationError  → 422 (nothing was written)
- ConcurrencyError → 409 (another writer got there first; re-read and retry)
- StorageError     → 503 (content store or index unavailable)

When a document was uploaded but never indexed, the response names it in
orphaned_content_hash so an operator can reindex or discard it.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.exceptions import ConcurrencyError, StorageError, ValidationError
from ..observability import get_logger

logger = get_logger(__name__)


async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
    status_code = 409 if isinstance(exc, ConcurrencyError) else 503
    content = {"detail": str(exc)}
    if exc.orphaned_content_hash:
        content["orphaned_content_hash"] = exc.orphaned_content_hash
    logger.warning(
        "Ledger storage error",
        path=request.url.path,
        status_code=status_code,
        orphaned_content_hash=exc.orphaned_content_hash,
    )
    return JSONResponse(status_code=status_code, content=content)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(StorageError, _storage_error)
