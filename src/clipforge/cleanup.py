"""Guaranteed removal of everything a job wrote locally."""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .jobs import Job

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: bool = False


class CleanupManager:
    """Best-effort, exhaustive, idempotent cleanup. Never raises."""

    def __init__(self, workspace_root: Optional[str] = None):
        self.workspace_root = Path(workspace_root).resolve() if workspace_root else None

    def cleanup(self, job: Job) -> CleanupReport:
        """Remove operation outputs, the local input copy and the working directory."""
        report = CleanupReport()
        if job.cleaned_up:
            report.skipped = True
            return report

        for op in job.operations:
            self._remove_file(Path(op.output_path), report)

        if job.local_input_path:
            self._remove_file(Path(job.local_input_path), report)

        if job.work_dir:
            self._remove_tree(Path(job.work_dir), report)

        job.cleaned_up = True
        if report.failed:
            logger.warning("Cleanup for %s left %d paths behind: %s",
                           job.key, len(report.failed), report.failed)
        else:
            logger.debug("Cleanup for %s removed %d paths", job.key, len(report.removed))
        return report

    def _remove_file(self, path: Path, report: CleanupReport) -> None:
        try:
            if path.is_file() or path.is_symlink():
                path.unlink()
                report.removed.append(str(path))
        except OSError as e:
            logger.warning("Could not remove %s: %s", path, e)
            report.failed.append(str(path))

    def _remove_tree(self, path: Path, report: CleanupReport) -> None:
        if not path.exists():
            return
        resolved = path.resolve()
        if self.workspace_root is not None and (
            resolved == self.workspace_root or self.workspace_root not in resolved.parents
        ):
            logger.error("Refusing to remove %s outside workspace %s", resolved, self.workspace_root)
            report.failed.append(str(path))
            return

        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            leftover = [str(p) for p in path.rglob("*")] or [str(path)]
            logger.warning("Could not remove %d paths under %s", len(leftover), path)
            report.failed.extend(leftover)
        else:
            report.removed.append(str(path))
