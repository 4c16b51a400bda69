from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import FileResponse

from featherpanel.api import responses
from featherpanel.api.deps import AdminPrincipal, get_snapshot_manager, snapshots_admin
from featherpanel.schemas import SnapshotPasswordRequest, SnapshotRestoreRequest
from featherpanel.services.snapshots import SnapshotManager

router = APIRouter(prefix="/databases/snapshots", tags=["Admin - Database Snapshots"])

DOWNLOAD_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-File-Extension": "fpb",
}


@router.get("")
def list_snapshots(manager: SnapshotManager = Depends(get_snapshot_manager)):
    return responses.success({"snapshots": manager.index()}, "Snapshots retrieved successfully")


@router.post("")
def create_snapshot(
    payload: Optional[SnapshotPasswordRequest] = None,
    manager: SnapshotManager = Depends(get_snapshot_manager),
    principal: AdminPrincipal = Depends(snapshots_admin),
):
    created = manager.create(principal.user, payload.password if payload else None)
    return responses.success(created, "Snapshot created successfully")


@router.post("/restore-upload")
def restore_upload(
    file: Optional[UploadFile] = File(None),
    confirm: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    manager: SnapshotManager = Depends(get_snapshot_manager),
    principal: AdminPrincipal = Depends(snapshots_admin),
):
    message = manager.restore_upload(
        principal.user,
        file.filename if file else None,
        file.file if file else None,
        confirm=(confirm or "").strip().lower() == "true",
        password=password,
    )
    return responses.success({"message": "Database restored successfully"}, message)


@router.post("/fresh-restore")
def fresh_restore(
    payload: SnapshotRestoreRequest,
    manager: SnapshotManager = Depends(get_snapshot_manager),
    principal: AdminPrincipal = Depends(snapshots_admin),
):
    outcome = manager.fresh_restore(principal.user, confirm=payload.confirm, password=payload.password)
    return responses.success(
        {"message": "Database restored to fresh state successfully", "migrations": outcome["migrations"]},
        outcome["message"],
    )


@router.get("/{filename}/download")
def download_snapshot(
    filename: str,
    password: Optional[str] = Query(None),
    manager: SnapshotManager = Depends(get_snapshot_manager),
    principal: AdminPrincipal = Depends(snapshots_admin),
):
    path = manager.download(principal.user, filename, password)
    return FileResponse(
        path,
        media_type="application/sql",
        filename=path.name,
        headers=DOWNLOAD_HEADERS,
    )


@router.post("/{filename}/restore")
def restore_snapshot(
    filename: str,
    payload: SnapshotRestoreRequest,
    manager: SnapshotManager = Depends(get_snapshot_manager),
    principal: AdminPrincipal = Depends(snapshots_admin),
):
    message = manager.restore(principal.user, filename, confirm=payload.confirm, password=payload.password)
    return responses.success({"message": "Database restored successfully"}, message)


@router.delete("/{filename}")
def delete_snapshot(
    filename: str,
    payload: Optional[SnapshotPasswordRequest] = None,
    manager: SnapshotManager = Depends(get_snapshot_manager),
    principal: AdminPrincipal = Depends(snapshots_admin),
):
    manager.delete(principal.user, filename, payload.password if payload else None)
    return responses.success({"message": "Snapshot deleted successfully"}, "Snapshot deleted successfully")


__all__ = ["router"]
