from __future__ import annotations

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from .services.blob_store import LocalBlobStore, get_blob_store, safe_segment

router = APIRouter(prefix="/files", tags=["files"])


@router.get("/{folder}/{filename}")
async def get_blob_file(folder: str, filename: str):
    """Serve a stored artifact by its public blob path."""
    try:
        valid = safe_segment(folder) == folder and safe_segment(filename) == filename
    except ValueError:
        valid = False
    if not valid:
        raise HTTPException(status_code=400, detail="Invalid filename")

    store = get_blob_store()
    if not isinstance(store, LocalBlobStore):
        raise HTTPException(status_code=404, detail="File not found")
    path = store.path_for(f"{folder}/{filename}")
    if not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path)
