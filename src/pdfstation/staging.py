"""
File staging area: job-scoped inputs and operation-scoped outputs.

Layout:
    <upload_dir>/<job_id>/<sanitized filename>          staged inputs
    <output_dir>/<operation dir>/<job_id><suffix>       final outputs
    <output_dir>/work/<job_id>/                         scratch (split parts)
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Tuple

from .jobs.models import Operation, ProtectionAction, ProtectParams

# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

OUTPUT_LAYOUT = {
    Operation.COMPRESS: ("compressed", "_compressed.pdf"),
    Operation.MERGE: ("merged", "_merged.pdf"),
    Operation.SPLIT: ("split", "_split.zip"),
    Operation.PROTECT: ("protected", "_protected.pdf"),
    Operation.PDF_TO_WORD: ("word", "_converted.docx"),
}
UNPROTECTED_SUFFIX = "_unprotected.pdf"


def sanitize_filename(filename: Optional[str], fallback: str = "document") -> str:
    """
    Reduce a client-supplied filename to a safe basename ending in .pdf.

    Example:
        >>> sanitize_filename("../../etc/My Report (final).PDF")
        "My-Report-final.pdf"
    """
    name = Path((filename or "").replace("\\", "/")).name
    stem = SANITIZE_PATTERN.sub("-", Path(name).stem).strip("-_.")
    return f"{stem or fallback}.pdf"


class FileStaging:
    """Places uploaded inputs and produced outputs on the local filesystem."""

    def __init__(self, upload_dir: str, output_dir: str):
        self.upload_root = Path(upload_dir)
        self.output_root = Path(output_dir)

    def input_dir(self, job_id: str) -> Path:
        return self.upload_root / job_id

    def stage_inputs(self, job_id: str, files: Iterable[Tuple[Optional[str], BinaryIO]]) -> List[str]:
        """Copy (filename, stream) pairs into the job's input directory, in order."""
        target_dir = self.input_dir(job_id)
        target_dir.mkdir(parents=True, exist_ok=True)

        staged = []
        for filename, stream in files:
            destination = self._unique(target_dir, sanitize_filename(filename))
            with destination.open("wb") as buffer:
                shutil.copyfileobj(stream, buffer)
            staged.append(str(destination))
        return staged

    def stage_paths(self, job_id: str, paths: Iterable[str]) -> List[str]:
        """Stage local files (CLI submissions)."""
        opened = []
        try:
            for path in paths:
                opened.append((Path(path).name, open(path, "rb")))
            return self.stage_inputs(job_id, opened)
        finally:
            for _, stream in opened:
                stream.close()

    def discard_inputs(self, job_id: str) -> None:
        shutil.rmtree(self.input_dir(job_id), ignore_errors=True)

    def output_path(self, job_id: str, operation: Operation, params=None) -> Path:
        """Final output location for a job; the parent directory is created."""
        directory, suffix = OUTPUT_LAYOUT[Operation(operation)]
        if isinstance(params, ProtectParams) and params.action == ProtectionAction.REMOVE:
            suffix = UNPROTECTED_SUFFIX

        target_dir = self.output_root / directory
        target_dir.mkdir(parents=True, exist_ok=True)
        return target_dir / f"{job_id}{suffix}"

    def work_dir(self, job_id: str) -> Path:
        """Fresh scratch directory for intermediate files."""
        path = self.output_root / "work" / job_id
        shutil.rmtree(path, ignore_errors=True)
        path.mkdir(parents=True)
        return path

    def cleanup_work(self, job_id: str) -> None:
        shutil.rmtree(self.output_root / "work" / job_id, ignore_errors=True)

    @staticmethod
    def _unique(directory: Path, filename: str) -> Path:
        candidate = directory / filename
        stem, suffix = candidate.stem, candidate.suffix
        counter = 2
        while candidate.exists():
            candidate = directory / f"{stem}-{counter}{suffix}"
            counter += 1
        return candidate
