"""Image-aware PDF compression.

Three phases run over a cloned copy of the input document:

1. Image re-encoding: images whose effective DPI exceeds the target for the
   requested quality are downsampled (bicubic) and re-encoded as JPEG. A
   re-encoded image only replaces the original when it is strictly smaller.
2. Content-stream compression: page content streams without FlateDecode
   are deflated (lossless).
3. Duplicate-image elimination: byte-identical image XObjects are collapsed
   onto one canonical object and the orphaned copies are dropped.

Per-object failures are logged at DEBUG and skipped; only an unreadable or
encrypted input aborts the run (CompressionError).
"""

import io
import logging
import os
import shutil
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

from PIL import Image
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from pypdf.generic import DictionaryObject, IndirectObject, NameObject

from .errors import CompressionError
from .hashing import content_digest
from .models import CompressionConfig

logger = logging.getLogger(__name__)

POINTS_PER_INCH = 72.0

# Dictionary entries that, with the raw stream bytes, define how an image renders.
IMAGE_IDENTITY_KEYS = (
    "/Width",
    "/Height",
    "/BitsPerComponent",
    "/ColorSpace",
    "/Filter",
    "/DecodeParms",
    "/Decode",
    "/ImageMask",
    "/Intent",
)

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]


@dataclass
class CompressionReport:
    """Outcome of one compression run."""

    original_size: int
    compressed_size: int
    images_recompressed: int = 0
    images_skipped: int = 0
    streams_compressed: int = 0
    duplicates_removed: int = 0
    kept_original: bool = False

    @property
    def saved_bytes(self) -> int:
        return self.original_size - self.compressed_size

    @property
    def reduction_percent(self) -> float:
        if self.original_size <= 0:
            return 0.0
        return self.saved_bytes * 100.0 / self.original_size

    def summary(self) -> str:
        return (
            f"{human_size(self.original_size)} -> {human_size(self.compressed_size)} "
            f"({self.reduction_percent:.1f}% smaller); images re-encoded={self.images_recompressed}, "
            f"streams deflated={self.streams_compressed}, duplicates removed={self.duplicates_removed}"
        )


def human_size(num_bytes: int) -> str:
    """Format a byte count with binary units, e.g. 1536 -> '1.5 KB'."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    value = float(num_bytes)
    for unit in ("KB", "MB", "GB"):
        value /= 1024.0
        if value < 1024.0 or unit == "GB":
            return f"{value:.1f} {unit}"
    return f"{value:.1f} GB"


def estimate_compressed_size(original_size: int, quality_percent: int) -> int:
    """Rough output size shown before a compression job is submitted."""
    if original_size < 0:
        raise ValueError("original_size must be >= 0")
    if not 0 <= quality_percent <= 100:
        raise ValueError("quality must be between 0 and 100")
    return int(original_size * (quality_percent / 100.0) * 0.85)


class CompressionEngine:
    """Selective re-encoding, stream deflation and image deduplication."""

    def __init__(self, config: Optional[CompressionConfig] = None):
        self.config = config or CompressionConfig()

    def target_dpi(self, quality: float) -> int:
        """Print (> 0.8), screen (> 0.5) or web resolution."""
        if quality > 0.8:
            return self.config.print_dpi
        if quality > 0.5:
            return self.config.screen_dpi
        return self.config.web_dpi

    def jpeg_quality(self, quality: float) -> int:
        """Map quality in [0, 1] onto the PIL JPEG scale (75-95 by default)."""
        band = self.config.min_encode_quality + self.config.encode_quality_span * quality
        return int(round(band * 100))

    def should_resample(self, width_px: int, height_px: int, dpi: float, quality: float) -> bool:
        if width_px < self.config.icon_threshold_px or height_px < self.config.icon_threshold_px:
            return False
        return dpi > self.target_dpi(quality) * self.config.dpi_slack

    def compress(
        self,
        input_path: str,
        output_path: str,
        quality: float,
        log: Optional[LoggerLike] = None,
    ) -> CompressionReport:
        """Compress `input_path` into `output_path`.

        Raises:
            CompressionError: Input is unreadable, corrupt or encrypted
            ValueError: quality outside [0, 1]
        """
        log = log or logger
        if not 0.0 <= quality <= 1.0:
            raise ValueError("quality must be between 0.0 and 1.0")

        original_size = os.path.getsize(input_path)
        writer = self._open(input_path)
        report = CompressionReport(original_size=original_size, compressed_size=original_size)

        log.info(
            "Compressing %s (%s) at quality %.2f, target %d DPI",
            os.path.basename(input_path),
            human_size(original_size),
            quality,
            self.target_dpi(quality),
        )

        self._recompress_images(writer, quality, report, log)
        self._compress_content_streams(writer, report, log)
        self._deduplicate_images(writer, report, log)

        if report.duplicates_removed:
            writer.compress_identical_objects(remove_identicals=False, remove_orphans=True)

        os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
        with open(output_path, "wb") as handle:
            writer.write(handle)

        compressed_size = os.path.getsize(output_path)
        if compressed_size > original_size:
            # Rewriting can only add overhead here; keep the source bytes.
            shutil.copyfile(input_path, output_path)
            compressed_size = original_size
            report.kept_original = True

        report.compressed_size = compressed_size
        log.info("Compression finished: %s", report.summary())
        return report

    def _open(self, input_path: str) -> PdfWriter:
        try:
            reader = PdfReader(input_path)
            if reader.is_encrypted:
                raise CompressionError(f"PDF is encrypted: {os.path.basename(input_path)}")
            return PdfWriter(clone_from=reader)
        except PdfReadError as e:
            raise CompressionError(f"PDF appears to be corrupted or unreadable: {e}") from e

    # Phase 1: image re-encoding

    def _recompress_images(
        self, writer: PdfWriter, quality: float, report: CompressionReport, log: LoggerLike
    ) -> None:
        processed: Set[int] = set()
        jpeg_quality = self.jpeg_quality(quality)
        target = self.target_dpi(quality)

        for page_number, page in enumerate(writer.pages, start=1):
            page_width_in = float(page.mediabox.width) / POINTS_PER_INCH
            page_height_in = float(page.mediabox.height) / POINTS_PER_INCH
            if page_width_in <= 0 or page_height_in <= 0:
                log.debug("Page %d has an empty media box, skipping its images", page_number)
                continue

            try:
                images = list(page.images)
            except Exception as e:
                log.debug("Could not enumerate images on page %d: %s", page_number, e)
                continue

            for image_file in images:
                ref = image_file.indirect_reference
                if ref is None:
                    continue  # inline image
                if ref.idnum in processed:
                    continue
                processed.add(ref.idnum)

                try:
                    replaced = self._recompress_image(
                        image_file, page_width_in, page_height_in, quality, target, jpeg_quality, log
                    )
                except Exception as e:
                    log.debug("Skipping image %s on page %d: %s", image_file.name, page_number, e)
                    replaced = False

                if replaced:
                    report.images_recompressed += 1
                else:
                    report.images_skipped += 1

    def _recompress_image(
        self,
        image_file,
        page_width_in: float,
        page_height_in: float,
        quality: float,
        target: int,
        jpeg_quality: int,
        log: LoggerLike,
    ) -> bool:
        stream = image_file.indirect_reference.get_object()
        if "/SMask" in stream or "/Mask" in stream or stream.get("/ImageMask"):
            return False

        width_px = int(stream.get("/Width", 0))
        height_px = int(stream.get("/Height", 0))
        if width_px <= 0 or height_px <= 0:
            return False

        dpi = max(width_px / page_width_in, height_px / page_height_in)
        if not self.should_resample(width_px, height_px, dpi, quality):
            log.debug(
                "Skipping image %s (%dx%d, %.1f DPI) - already optimal",
                image_file.name, width_px, height_px, dpi,
            )
            return False

        image = image_file.image
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")

        scale = target / dpi
        if scale < self.config.downsample_threshold:
            new_size = (max(1, round(width_px * scale)), max(1, round(height_px * scale)))
            image = image.resize(new_size, Image.Resampling.BICUBIC)

        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=jpeg_quality)
        original_length = len(getattr(stream, "_data", b"") or b"")
        if original_length and buffer.tell() >= original_length:
            log.debug(
                "Re-encoded image %s is not smaller (%s >= %s), keeping original",
                image_file.name, human_size(buffer.tell()), human_size(original_length),
            )
            return False

        image_file.replace(image, quality=jpeg_quality)
        log.debug(
            "Re-encoded image %s: %dx%d @ %.0f DPI -> %dx%d, %s -> %s",
            image_file.name, width_px, height_px, dpi, image.width, image.height,
            human_size(original_length), human_size(buffer.tell()),
        )
        return True

    # Phase 2: content streams

    def _compress_content_streams(
        self, writer: PdfWriter, report: CompressionReport, log: LoggerLike
    ) -> None:
        for page_number, page in enumerate(writer.pages, start=1):
            try:
                streams = self._content_streams(page)
                uncompressed = [s for s in streams if not _has_flate(s)]
                if not uncompressed:
                    continue
                page.compress_content_streams()
                report.streams_compressed += len(uncompressed)
            except Exception as e:
                log.debug("Could not compress content stream of page %d: %s", page_number, e)

    @staticmethod
    def _content_streams(page) -> List[DictionaryObject]:
        contents = page.get("/Contents")
        if contents is None:
            return []
        contents = contents.get_object()
        if isinstance(contents, list):
            return [item.get_object() for item in contents]
        return [contents]

    # Phase 3: duplicate images

    def _deduplicate_images(
        self, writer: PdfWriter, report: CompressionReport, log: LoggerLike
    ) -> None:
        """Repoint every reference to a duplicate image at its canonical copy.

        entries holds one canonical reference per distinct digest,
        canonical_index maps digest -> position in entries, and references
        records (xobject dict, name, entry position) for every image use.
        """
        entries: List[IndirectObject] = []
        canonical_index: Dict[str, int] = {}
        references: List[Tuple[DictionaryObject, NameObject, int]] = []
        digests: Dict[int, str] = {}

        for xobjects, name, ref in self._image_references(writer):
            try:
                digest = digests.get(ref.idnum)
                if digest is None:
                    digest = self._image_digest(ref.get_object())
                    digests[ref.idnum] = digest
            except Exception as e:
                log.debug("Could not hash image %s: %s", name, e)
                continue

            index = canonical_index.get(digest)
            if index is None:
                index = len(entries)
                canonical_index[digest] = index
                entries.append(ref)
            references.append((xobjects, name, index))

        duplicates: Set[int] = set()
        for xobjects, name, index in references:
            canonical = entries[index]
            current = xobjects.raw_get(name)
            if current.idnum == canonical.idnum:
                continue
            duplicates.add(current.idnum)
            xobjects[name] = canonical

        report.duplicates_removed = len(duplicates)
        if duplicates:
            log.debug("Collapsed %d duplicate images onto %d canonical objects", len(duplicates), len(entries))

    def _image_references(
        self, writer: PdfWriter
    ) -> Iterator[Tuple[DictionaryObject, NameObject, IndirectObject]]:
        """Yield (xobject dict, name, reference) for each image use, pages then nested forms."""
        visited_forms: Set[int] = set()

        def walk(resources) -> Iterator[Tuple[DictionaryObject, NameObject, IndirectObject]]:
            if resources is None:
                return
            resources = resources.get_object()
            xobjects = resources.get("/XObject")
            if xobjects is None:
                return
            xobjects = xobjects.get_object()

            for name in list(xobjects.keys()):
                ref = xobjects.raw_get(name)
                if not isinstance(ref, IndirectObject):
                    continue
                obj = ref.get_object()
                subtype = obj.get("/Subtype")
                if subtype == "/Image":
                    yield xobjects, NameObject(name), ref
                elif subtype == "/Form" and ref.idnum not in visited_forms:
                    visited_forms.add(ref.idnum)
                    yield from walk(obj.get("/Resources"))

        for page in writer.pages:
            yield from walk(page.get("/Resources"))

    def _image_digest(self, stream) -> str:
        chunks = [stream._data or b""]
        for key in IMAGE_IDENTITY_KEYS:
            chunks.append(f"{key}={stream.get(key)!s}".encode("utf-8"))
        smask = stream.get("/SMask")
        if smask is not None:
            chunks.append(self._image_digest(smask.get_object()).encode("ascii"))
        return content_digest(chunks)


def _has_flate(stream) -> bool:
    filters = stream.get("/Filter")
    if filters is None:
        return False
    filters = filters.get_object()
    if isinstance(filters, list):
        return any(f == "/FlateDecode" for f in filters)
    return filters == "/FlateDecode"
