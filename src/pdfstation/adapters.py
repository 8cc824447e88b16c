"""Merge, split, protect and convert adapters.

Each adapter reads staged inputs and writes exactly one output file. Input
problems that retrying cannot fix are raised as PermanentJobError subclasses.
"""

from __future__ import annotations

import functools
import logging
import operator
import zipfile
from pathlib import Path
from typing import List, Optional, Sequence, Union

from docx import Document
from pypdf import PasswordType, PdfReader, PdfWriter
from pypdf.constants import UserAccessPermissions
from pypdf.errors import PdfReadError

from .errors import InvalidJobParametersError, UnreadableDocumentError, WrongPasswordError
from .jobs.models import ProtectionAction, ProtectParams, SplitMode, SplitParams

logger = logging.getLogger(__name__)

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]
PathLike = Union[str, Path]


def _load_pdf(input_path: PathLike, allow_encrypted: bool = False) -> PdfReader:
    """Load a PDF and optionally enforce unencrypted input."""
    try:
        reader = PdfReader(str(input_path))
    except PdfReadError as error:
        raise UnreadableDocumentError(
            f"PDF appears to be corrupted or unreadable: {Path(input_path).name}"
        ) from error
    if reader.is_encrypted and not allow_encrypted:
        raise UnreadableDocumentError(f"PDF is encrypted: {Path(input_path).name}")
    return reader


def _write(writer: PdfWriter, output_path: PathLike) -> str:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("wb") as handle:
        writer.write(handle)
    return str(output_path)


def parse_page_ranges(value: str, total_pages: int) -> List[int]:
    """
    Expand "1-3,5,7-9" into an ordered list of 1-based page numbers.

    Pages outside 1..total_pages are dropped and repeated pages are kept once.

    Raises:
        InvalidJobParametersError: A part is not a number or a range
    """
    pages: List[int] = []
    seen = set()
    for part in value.split(","):
        cleaned = part.strip()
        if not cleaned:
            continue
        if "-" in cleaned:
            start, end = cleaned.split("-", 1)
        else:
            start, end = cleaned, cleaned
        try:
            start_i, end_i = int(start), int(end)
        except ValueError:
            raise InvalidJobParametersError(f"Invalid page range: {cleaned!r}")

        for page in range(max(1, start_i), min(total_pages, end_i) + 1):
            if page not in seen:
                seen.add(page)
                pages.append(page)
    return pages


def merge_pdfs(
    input_paths: Sequence[PathLike], output_path: PathLike, log: Optional[LoggerLike] = None
) -> str:
    """Concatenate the pages of all inputs, in the given order."""
    log = log or logger
    writer = PdfWriter()
    for path in input_paths:
        reader = _load_pdf(path)
        for page in reader.pages:
            writer.add_page(page)
    log.info("Merged %d files into %d pages", len(input_paths), len(writer.pages))
    return _write(writer, output_path)


def split_pdf(
    input_path: PathLike,
    params: SplitParams,
    output_path: PathLike,
    work_dir: PathLike,
    log: Optional[LoggerLike] = None,
) -> str:
    """Split a PDF into parts and zip them into `output_path`.

    PAGES writes page_<n>.pdf per selected page, INTERVAL writes part_<i>.pdf
    chunks of `interval` pages, ALL is INTERVAL with a chunk size of one.
    """
    log = log or logger
    reader = _load_pdf(input_path)
    total_pages = len(reader.pages)
    work_dir = Path(work_dir)
    work_dir.mkdir(parents=True, exist_ok=True)

    parts: List[Path] = []
    if params.mode == SplitMode.PAGES:
        selection = parse_page_ranges(params.ranges or "", total_pages)
        if not selection:
            raise InvalidJobParametersError(
                f"No valid pages selected by {params.ranges!r} (document has {total_pages} pages)"
            )
        for page_number in selection:
            writer = PdfWriter()
            writer.add_page(reader.pages[page_number - 1])
            parts.append(Path(_write(writer, work_dir / f"page_{page_number}.pdf")))
    else:
        interval = 1 if params.mode == SplitMode.ALL else params.interval
        for index, start in enumerate(range(0, total_pages, interval), start=1):
            writer = PdfWriter()
            for page_index in range(start, min(start + interval, total_pages)):
                writer.add_page(reader.pages[page_index])
            parts.append(Path(_write(writer, work_dir / f"part_{index}.pdf")))

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(output_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for part in parts:
            archive.write(part, arcname=part.name)

    log.info("Split %d pages into %d files (%s)", total_pages, len(parts), params.mode.value)
    return str(output_path)


def _permissions(params: ProtectParams) -> UserAccessPermissions:
    permissions = functools.reduce(operator.or_, UserAccessPermissions)
    if not params.allow_printing:
        permissions &= ~(UserAccessPermissions.PRINT | UserAccessPermissions.PRINT_TO_REPRESENTATION)
    if not params.allow_copying:
        permissions &= ~(UserAccessPermissions.EXTRACT | UserAccessPermissions.EXTRACT_TEXT_AND_GRAPHICS)
    if not params.allow_modification:
        permissions &= ~(
            UserAccessPermissions.MODIFY
            | UserAccessPermissions.ADD_OR_MODIFY
            | UserAccessPermissions.FILL_FORM_FIELDS
        )
    if not params.allow_assembly:
        permissions &= ~UserAccessPermissions.ASSEMBLE_DOC
    return permissions


def protect_pdf(
    input_path: PathLike,
    params: ProtectParams,
    output_path: PathLike,
    log: Optional[LoggerLike] = None,
) -> str:
    """Add AES-256 protection, or remove it with the current password."""
    log = log or logger

    if params.action == ProtectionAction.REMOVE:
        reader = _load_pdf(input_path, allow_encrypted=True)
        if reader.is_encrypted:
            if reader.decrypt(params.password or "") == PasswordType.NOT_DECRYPTED:
                raise WrongPasswordError("Incorrect password for protected PDF")
        else:
            log.warning("Input is not encrypted; writing an unchanged copy")
        writer = PdfWriter(clone_from=reader)
        log.info("Removed password protection")
        return _write(writer, output_path)

    reader = _load_pdf(input_path)
    writer = PdfWriter(clone_from=reader)
    writer.encrypt(
        user_password=params.user_password,
        owner_password=params.effective_owner_password,
        permissions_flag=_permissions(params),
        algorithm="AES-256",
    )
    log.info(
        "Encrypted with AES-256 (print=%s copy=%s modify=%s assemble=%s)",
        params.allow_printing,
        params.allow_copying,
        params.allow_modification,
        params.allow_assembly,
    )
    return _write(writer, output_path)


def pdf_to_word(
    input_path: PathLike, output_path: PathLike, log: Optional[LoggerLike] = None
) -> str:
    """Extract text page by page into a .docx, with a page break between pages."""
    log = log or logger
    reader = _load_pdf(input_path)
    document = Document()

    for index, page in enumerate(reader.pages):
        if index:
            document.add_page_break()
        text = page.extract_text() or ""
        for line in text.splitlines():
            document.add_paragraph(line)

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    document.save(str(output_path))
    log.info("Converted %d pages to Word", len(reader.pages))
    return str(output_path)
