"""Result packaging: zip every successful output and upload it as one object."""

import io
import logging
import zipfile
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import UploadError
from .jobs import Job, JobStatus, OperationStatus
from .planner import archive_folder, archive_name
from .storage import ZIP_CONTENT_TYPE, DurableStorage, owner_namespace

logger = logging.getLogger(__name__)


class ResultPackager:
    """Builds the job archive in memory and stores it durably.

    ``package`` never raises: upload and archive errors become a
    ``Finalization failed`` job error and a failed status.
    """

    def __init__(self, storage: DurableStorage, signed_url_expiry_s: Optional[int] = None):
        self.storage = storage
        self.signed_url_expiry_s = signed_url_expiry_s

    def collect(self, job: Job) -> List[Tuple[Path, str]]:
        """(file, archive name) pairs for completed operations whose output exists."""
        entries = []
        for op in job.operations:
            if op.status != OperationStatus.COMPLETED:
                continue
            path = Path(op.output_path)
            if not path.is_file():
                logger.warning("Skipping missing output for %s: %s", op.label, path)
                continue
            folder = archive_folder(job.base_name, op.kind, getattr(op.params, "aspect_ratio", None))
            entries.append((path, f"{folder}/{path.name}"))
        return entries

    def build_archive(self, entries: List[Tuple[Path, str]]) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path, arcname in entries:
                zf.write(path, arcname)
        return buffer.getvalue()

    def package(self, job: Job) -> Optional[str]:
        """Archive and upload a job's successful outputs.

        Returns:
            The archive's durable location, or None if packaging failed
        """
        if job.deadline is not None and not job.deadline.has_time_for("package", 0.0):
            logger.warning("Packaging %s with no time left in its deadline", job.key)

        entries = self.collect(job)
        if not entries:
            job.fail("Finalization failed: no output files to package")
            return None

        name = archive_name(job.base_name)
        try:
            data = self.build_archive(entries)
            key = self.storage.archive_key(job.owner, name)
            confirmation = self.storage.upload_archive(
                data, key, ZIP_CONTENT_TYPE, owner_namespace(job.owner)
            )
        except (UploadError, OSError, zipfile.LargeZipFile) as e:
            logger.error("Packaging failed for %s: %s", job.key, e)
            job.fail(f"Finalization failed: {e}")
            return None
        except Exception as e:
            logger.exception("Unexpected packaging error for %s", job.key)
            job.fail(f"Finalization failed: {e}")
            return None

        job.archive_location = confirmation.location
        try:
            job.download_url = self.storage.signed_url(confirmation.key, self.signed_url_expiry_s)
        except Exception as e:
            logger.warning("Could not sign download URL for %s: %s", confirmation.key, e)

        job.status = JobStatus.COMPLETED
        logger.info(
            "Packaged %d files for %s into %s (%.1f MB)",
            len(entries), job.key, confirmation.location, confirmation.size_bytes / 1024 / 1024,
        )
        return confirmation.location
