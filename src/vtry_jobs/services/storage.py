"""Object store for generation inputs and results.

Local-disk backend with an interface designed for an S3 drop-in:
bytes go in, a stable reference URL comes out.

Files are stored at: {base_path}/jobs/{job_id}/{filename}
Served at stable URLs:  {public_base_url}/api/results/{job_id}/{filename}
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

URL_PREFIX = "/api/results/"


class StorageService:
    """Manages persistent files for generation jobs.

    The local backend writes files to ``{base_path}/jobs/{job_id}/``.
    When an S3 backend is needed, replace this class with one that uploads
    to S3 and returns public URLs; the interface stays the same.
    """

    def __init__(self, base_path: str, public_base_url: str = "") -> None:
        self._base = Path(base_path)
        self._public_base_url = public_base_url.rstrip("/")

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _job_dir(self, job_id: str) -> Path:
        return self._base / "jobs" / job_id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def store_file(self, job_id: str, filename: str, data: bytes) -> str:
        """Write raw bytes to storage and return the reference URL.

        ``filename`` may contain forward slashes for subdirectories.
        Intermediate directories are created automatically.
        """
        dest = self._job_dir(job_id) / filename
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        logger.debug("Stored %s bytes -> %s", len(data), dest)
        return f"{self._public_base_url}{URL_PREFIX}{job_id}/{filename}"

    def delete_ref(self, ref: str) -> None:
        """Delete the single file behind a reference URL, if it is ours."""
        path = self.url_to_path(ref)
        if path is not None and path.is_file():
            path.unlink()

    def url_to_path(self, url: str) -> Path | None:
        """Convert a reference URL back to an absolute filesystem path.

        Accepts ``/api/results/{job_id}/{filename}`` with or without the
        public base URL; returns None for foreign references and for paths
        that would escape the storage root.
        """
        if self._public_base_url and url.startswith(self._public_base_url):
            url = url[len(self._public_base_url):]
        if not url.startswith(URL_PREFIX):
            return None
        relative = url[len(URL_PREFIX):]
        root = (self._base / "jobs").resolve()
        resolved = (root / relative).resolve()
        if not resolved.is_relative_to(root):
            return None
        return resolved
