import zlib

import pytest
from PIL import Image
from pypdf import PdfReader, PdfWriter

from pdfstation.models import StationConfig
from pdfstation.runtime import build_station


def _raw_text_pdf(page_texts, filter_contents=False):
    """Build a minimal PDF with one Helvetica text line per page.

    Content streams are left uncompressed unless filter_contents is set.
    """
    objects = []
    page_ids = []
    n_pages = len(page_texts)
    # 1 catalog, 2 pages, 3 font, then (page, contents) pairs
    for index in range(n_pages):
        page_ids.append(4 + index * 2)

    objects.append(b"<< /Type /Catalog /Pages 2 0 R >>")
    kids = " ".join(f"{pid} 0 R" for pid in page_ids)
    objects.append(f"<< /Type /Pages /Kids [{kids}] /Count {n_pages} >>".encode())
    objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")

    for index, text in enumerate(page_texts):
        contents_id = page_ids[index] + 1
        objects.append(
            (
                "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                f"/Resources << /Font << /F1 3 0 R >> >> /Contents {contents_id} 0 R >>"
            ).encode()
        )
        stream = f"BT /F1 24 Tf 72 720 Td ({text}) Tj ET".encode()
        if filter_contents:
            stream = zlib.compress(stream)
            header = f"<< /Length {len(stream)} /Filter /FlateDecode >>".encode()
        else:
            header = f"<< /Length {len(stream)} >>".encode()
        objects.append(header + b"\nstream\n" + stream + b"\nendstream")

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode() + body + b"\nendobj\n"

    xref_at = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode()
    return bytes(out)


@pytest.fixture
def make_text_pdf(tmp_path):
    """Factory: write a text PDF with one page per entry and return its path."""

    def _make(name="doc.pdf", pages=("Page one",), filter_contents=False):
        path = tmp_path / name
        path.write_bytes(_raw_text_pdf(list(pages), filter_contents=filter_contents))
        return str(path)

    return _make


@pytest.fixture
def make_image_pdf(tmp_path):
    """Factory: write a PDF of noise images at a given resolution.

    Each page shows one image of size_px x size_px, so the effective DPI
    equals `dpi`. With identical=True every page gets the same image bytes
    as a separate object.
    """

    def _make(name="scan.pdf", size_px=1200, dpi=600, pages=1, identical=False, sigma=64):
        path = tmp_path / name
        first = Image.effect_noise((size_px, size_px), sigma)
        others = []
        for _ in range(pages - 1):
            others.append(first.copy() if identical else Image.effect_noise((size_px, size_px), sigma))
        first.save(str(path), "PDF", resolution=float(dpi), save_all=True, append_images=others)
        return str(path)

    return _make


@pytest.fixture
def make_encrypted_pdf(tmp_path, make_text_pdf):
    def _make(name="locked.pdf", password="secret"):
        source = make_text_pdf(name=f"plain-{name}", pages=("Top secret",))
        writer = PdfWriter(clone_from=PdfReader(source))
        writer.encrypt(user_password=password, owner_password=f"{password}_owner", algorithm="AES-256")
        path = tmp_path / name
        with open(path, "wb") as handle:
            writer.write(handle)
        return str(path)

    return _make


@pytest.fixture
def corrupt_pdf(tmp_path):
    path = tmp_path / "broken.pdf"
    path.write_bytes(b"this is not a pdf at all" * 10)
    return str(path)


@pytest.fixture
def config(tmp_path):
    """Station config rooted in the test's temp directory."""
    db_path = str(tmp_path / "station.db")
    return StationConfig.from_dict(
        {
            "storage": {
                "upload_dir": str(tmp_path / "uploads"),
                "output_dir": str(tmp_path / "outputs"),
            },
            "store": {"db_path": db_path},
            "exchange": {"db_path": db_path, "partitions": 4, "redelivery_backoff_s": 0.0},
            "processing": {"max_retries": 3, "workers": 2, "poll_interval_s": 0.05},
        }
    )


@pytest.fixture
def station(config):
    station = build_station(config)
    yield station
    station.close()


class FakeClock:
    """Manually advanced time source for lease and backoff tests."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
