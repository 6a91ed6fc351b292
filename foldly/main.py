"""
Main FastAPI application for the Foldly upload service.
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile, status

from foldly.config import config
from foldly.db import Database
from foldly.errors import UploadError
from foldly.handlers import create_handlers
from foldly.manager import UploadManager
from foldly.models import (
    BatchProgress,
    BatchResponse,
    FileProgress,
    IncomingFile,
    LinkUploadContext,
    OrphanReport,
    ResumableSession,
    UploadResponse,
    UploadStatistics,
    UploadStatus,
    WorkspaceUploadContext,
)
from foldly.quota import QuotaChecker
from foldly.reconcile import OrphanReconciler
from foldly.storage import get_storage_provider
from foldly.validation import guess_content_type

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SPOOL_READ_SIZE = 1024 * 1024

# HTTP status for each error code; anything not listed is a server error
STATUS_CODES = {
    "FILE_TOO_LARGE": status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    "EMPTY_FILE": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "BLOCKED_FILE_TYPE": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "INVALID_FILE_TYPE": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "VALIDATION_ERROR": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "MISSING_UPLOADER_NAME": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "INVALID_CONTEXT": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "QUOTA_EXCEEDED": status.HTTP_403_FORBIDDEN,
    "WORKSPACE_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "LINK_UNAVAILABLE": status.HTTP_410_GONE,
    "INVALID_STATE": status.HTTP_409_CONFLICT,
    "RETRY_LIMIT_EXCEEDED": status.HTTP_409_CONFLICT,
    "SESSION_CONFLICT": status.HTTP_409_CONFLICT,
    "SESSION_EXPIRED": status.HTTP_409_CONFLICT,
    "STORAGE_ERROR": status.HTTP_502_BAD_GATEWAY,
}


def http_error(error: UploadError) -> HTTPException:
    return HTTPException(
        status_code=STATUS_CODES.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"code": error.code, "message": error.user_message},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup and shutdown events.
    """
    logger.info("Starting Foldly upload service")

    db = Database(config.db_path)
    await db.connect()

    provider = get_storage_provider(config)
    quota_checker = QuotaChecker(db)
    manager = UploadManager(create_handlers(provider, db, quota_checker, config), quota_checker)
    reconciler = OrphanReconciler(provider, db, [config.workspace_bucket, config.link_bucket])

    await manager.start()
    await reconciler.start()

    app.state.db = db
    app.state.manager = manager
    app.state.reconciler = reconciler
    logger.info(f"Using {provider.name} storage provider")

    yield

    logger.info("Shutting down Foldly upload service")
    await reconciler.stop()
    await manager.stop()
    await db.disconnect()


app = FastAPI(
    title="Foldly Upload Service",
    description="Resumable uploads into workspaces and public upload links",
    version="0.1.0",
    lifespan=lifespan,
)


def get_manager(request: Request) -> UploadManager:
    return request.app.state.manager


def get_reconciler(request: Request) -> OrphanReconciler:
    return request.app.state.reconciler


def get_user_id(x_user_id: str = Header(..., description="Id of the signed-in user")) -> str:
    return x_user_id


async def spool_upload(upload: UploadFile) -> IncomingFile:
    """Copy a request body to the spool directory so it outlives the request."""
    os.makedirs(config.spool_dir, exist_ok=True)
    path = os.path.join(config.spool_dir, uuid.uuid4().hex)
    size = 0
    try:
        with open(path, "wb") as out:
            while True:
                chunk = await upload.read(SPOOL_READ_SIZE)
                if not chunk:
                    break
                out.write(chunk)
                size += len(chunk)
    except OSError as e:
        logger.error(f"Failed to spool {upload.filename}: {e}")
        if os.path.exists(path):
            os.remove(path)
        raise HTTPException(status_code=500, detail="Internal server error")
    finally:
        await upload.close()

    name = upload.filename or "upload"
    return IncomingFile(
        name=name,
        size=size,
        content_type=upload.content_type or guess_content_type(name),
        path=path,
        delete_after=True,
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Foldly Upload Service"}


@app.post("/uploads/workspace", response_model=UploadResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_workspace_upload(
    file: UploadFile = File(...),
    workspace_id: str = Form(...),
    folder_id: Optional[str] = Form(None),
    user_id: str = Depends(get_user_id),
    manager: UploadManager = Depends(get_manager),
):
    """Upload one file into a workspace. Validation problems are returned with a 422-family status."""
    context = WorkspaceUploadContext(workspace_id=workspace_id, folder_id=folder_id, user_id=user_id)
    incoming = await spool_upload(file)
    logger.info(f"Received workspace upload {incoming.name} ({incoming.size} bytes) from user {user_id}")

    try:
        upload_id = await manager.upload(incoming, context)
    except UploadError as e:
        raise http_error(e)

    uploaded = manager.get_file(upload_id)
    validation = uploaded.validation
    response = UploadResponse(
        upload_id=upload_id,
        batch_id=uploaded.batch_id,
        status=uploaded.status,
        errors=validation.errors if validation else [],
        warnings=validation.warnings if validation else [],
    )
    if uploaded.status == UploadStatus.FAILED:
        raise HTTPException(
            status_code=STATUS_CODES.get(uploaded.error_code, status.HTTP_422_UNPROCESSABLE_ENTITY),
            detail=response.model_dump(mode="json"),
        )
    return response


@app.post("/batches/workspace", response_model=BatchResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_workspace_batch(
    files: List[UploadFile] = File(...),
    workspace_id: str = Form(...),
    folder_id: Optional[str] = Form(None),
    user_id: str = Depends(get_user_id),
    manager: UploadManager = Depends(get_manager),
):
    """Upload several files into a workspace."""
    context = WorkspaceUploadContext(workspace_id=workspace_id, folder_id=folder_id, user_id=user_id)
    incoming = [await spool_upload(file) for file in files]

    try:
        batch_id = await manager.upload_batch(incoming, context)
    except UploadError as e:
        raise http_error(e)

    batch = manager.get_batch(batch_id)
    return BatchResponse(batch_id=batch_id, file_ids=batch.file_ids, status=batch.status)


@app.post("/batches/link/{link_id}", response_model=BatchResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_link_batch(
    link_id: str,
    files: List[UploadFile] = File(...),
    uploader_name: str = Form(""),
    uploader_email: Optional[str] = Form(None),
    message: Optional[str] = Form(None),
    folder_id: Optional[str] = Form(None),
    manager: UploadManager = Depends(get_manager),
):
    """Upload files through a public upload link."""
    context = LinkUploadContext(
        link_id=link_id,
        folder_id=folder_id,
        uploader_name=uploader_name,
        uploader_email=uploader_email,
        message=message,
    )
    incoming = [await spool_upload(file) for file in files]
    logger.info(f"Received {len(incoming)} file(s) for link {link_id}")

    try:
        batch_id = await manager.upload_batch(incoming, context)
    except UploadError as e:
        raise http_error(e)

    batch = manager.get_batch(batch_id)
    return BatchResponse(batch_id=batch_id, file_ids=batch.file_ids, status=batch.status)


@app.get("/uploads/resumable", response_model=List[ResumableSession])
async def list_resumable_uploads(manager: UploadManager = Depends(get_manager)):
    """Failed files whose storage session can still be resumed."""
    return manager.get_resumable_sessions()


@app.get("/uploads/{upload_id}", response_model=FileProgress)
async def get_upload_progress(upload_id: str, manager: UploadManager = Depends(get_manager)):
    """Get progress of a single file."""
    progress = manager.get_progress(upload_id)
    if not progress:
        raise HTTPException(status_code=404, detail="Upload not found")
    return progress


@app.delete("/uploads/{upload_id}", status_code=status.HTTP_202_ACCEPTED)
async def cancel_upload(upload_id: str, manager: UploadManager = Depends(get_manager)):
    """Cancel a single file."""
    logger.info(f"Cancelling upload: {upload_id}")
    if manager.get_file(upload_id) is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    if not manager.cancel(upload_id):
        raise HTTPException(status_code=409, detail="Upload has already finished")
    return {"message": f"Upload {upload_id} cancelled"}


@app.post("/uploads/{upload_id}/retry", response_model=FileProgress, status_code=status.HTTP_202_ACCEPTED)
async def retry_upload(upload_id: str, manager: UploadManager = Depends(get_manager)):
    """Retry a failed file."""
    try:
        retried = manager.retry(upload_id)
    except UploadError as e:
        raise http_error(e)
    if not retried:
        raise HTTPException(status_code=404, detail="Upload not found")
    return manager.get_progress(upload_id)


@app.post("/uploads/{upload_id}/resume", response_model=FileProgress, status_code=status.HTTP_202_ACCEPTED)
async def resume_upload(upload_id: str, manager: UploadManager = Depends(get_manager)):
    """Resume a failed file from the bytes its storage session already holds."""
    try:
        resumed = manager.resume(upload_id)
    except UploadError as e:
        raise http_error(e)
    if not resumed:
        raise HTTPException(status_code=404, detail="Upload not found")
    return manager.get_progress(upload_id)


@app.get("/batches/{batch_id}", response_model=BatchProgress)
async def get_batch_progress(batch_id: str, manager: UploadManager = Depends(get_manager)):
    """Get aggregate progress of a batch."""
    progress = manager.get_batch_progress(batch_id)
    if not progress:
        raise HTTPException(status_code=404, detail="Batch not found")
    return progress


@app.delete("/batches/{batch_id}", status_code=status.HTTP_202_ACCEPTED)
async def cancel_batch(batch_id: str, manager: UploadManager = Depends(get_manager)):
    """Cancel every unfinished file of a batch."""
    logger.info(f"Cancelling batch: {batch_id}")
    if manager.get_batch(batch_id) is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    if not manager.cancel(batch_id):
        raise HTTPException(status_code=409, detail="Batch has already finished")
    return {"message": f"Batch {batch_id} cancelled"}


@app.get("/statistics", response_model=UploadStatistics)
async def get_statistics(manager: UploadManager = Depends(get_manager)):
    return manager.get_statistics()


@app.get("/storage/orphans", response_model=OrphanReport)
async def list_orphans(bucket: str, prefix: str = "", reconciler: OrphanReconciler = Depends(get_reconciler)):
    """Objects in a bucket with no file record, and records with no object."""
    try:
        return await reconciler.find_orphans(bucket, prefix)
    except UploadError as e:
        raise http_error(e)


@app.delete("/storage/orphans")
async def delete_orphan(bucket: str, path: str, reconciler: OrphanReconciler = Depends(get_reconciler)):
    """Delete one orphaned object."""
    try:
        deleted = await reconciler.resolve_orphan(path, bucket)
    except UploadError as e:
        raise http_error(e)
    if not deleted:
        raise HTTPException(status_code=409, detail="Object is still referenced or being uploaded")
    return {"message": f"Deleted {bucket}/{path}"}
