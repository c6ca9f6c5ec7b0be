"""Serves stored generation inputs and results.

Stable URL pattern: /api/results/{job_id}/{path}
"""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from vtry_jobs.deps import get_orchestrator
from vtry_jobs.services.orchestrator import Orchestrator
from vtry_jobs.services.storage import URL_PREFIX

router = APIRouter(prefix="/api/results", tags=["results"])

_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
}


@router.get("/{job_id}/{path:path}")
async def serve_result(
    job_id: str,
    path: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> FileResponse:
    """Serve a stored file; anything outside the storage root is a 404."""
    file_path = orchestrator.storage.url_to_path(f"{URL_PREFIX}{job_id}/{path}")
    if file_path is None or not file_path.is_file():
        raise HTTPException(status_code=404, detail="Not found")

    media_type = _MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream")
    return FileResponse(file_path, media_type=media_type)
