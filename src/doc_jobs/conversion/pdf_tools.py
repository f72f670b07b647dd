import re
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import fitz  # PyMuPDF

from ..jobs.errors import ConversionError, ValidationError
from ..jobs.interfaces import JobContext

_RANGE_RE = re.compile(r"\s*(\d+)\s*(?:-\s*(\d+)\s*)?")
COMPRESSION_LEVELS = {"low": 1, "recommended": 3, "extreme": 4}


@contextmanager
def open_pdf(path: Path) -> Iterator[fitz.Document]:
    try:
        doc = fitz.open(str(path))
    except (RuntimeError, ValueError) as e:
        raise ConversionError("bad_input", f"{path.name} is not a readable PDF") from e
    try:
        if doc.needs_pass:
            raise ConversionError("encrypted_input", f"{path.name} is password protected")
        if doc.page_count == 0:
            raise ConversionError("bad_input", f"{path.name} has no pages")
        yield doc
    finally:
        doc.close()


def parse_ranges(text: str) -> list[tuple[int, int]]:
    """Parse ``"1-3,5"`` into 1-based inclusive ranges."""
    ranges = []
    for part in str(text).split(","):
        if not part.strip():
            continue
        m = _RANGE_RE.fullmatch(part)
        if not m:
            raise ValueError(f"invalid page range {part.strip()!r}")
        start = int(m.group(1))
        end = int(m.group(2) or start)
        if start < 1 or end < start:
            raise ValueError(f"invalid page range {part.strip()!r}")
        ranges.append((start, end))
    if not ranges:
        raise ValueError("no page ranges given")
    return ranges


def _check_ranges(ranges: list[tuple[int, int]], page_count: int) -> None:
    for start, end in ranges:
        if end > page_count:
            raise ConversionError("bad_input", f"page range {start}-{end} exceeds {page_count} pages")


# Option validators run synchronously at submission time.

def validate_split_options(options: dict[str, Any]) -> None:
    mode = options.get("mode", "all")
    if mode not in ("all", "ranges"):
        raise ValidationError("split mode must be 'all' or 'ranges'")
    if mode == "ranges":
        try:
            parse_ranges(options.get("ranges", ""))
        except ValueError as e:
            raise ValidationError(str(e)) from None


def validate_rotate_options(options: dict[str, Any]) -> None:
    degrees = options.get("degrees", 90)
    if not isinstance(degrees, int) or isinstance(degrees, bool) or degrees % 90 != 0:
        raise ValidationError("degrees must be a multiple of 90")
    if "pages" in options:
        try:
            parse_ranges(options["pages"])
        except ValueError as e:
            raise ValidationError(str(e)) from None


def validate_compress_options(options: dict[str, Any]) -> None:
    level = options.get("level", "recommended")
    if not isinstance(level, str) or level not in COMPRESSION_LEVELS:
        raise ValidationError(f"level must be one of {', '.join(COMPRESSION_LEVELS)}")


def merge(ctx: JobContext) -> bytes:
    out = fitz.open()
    try:
        total = len(ctx.inputs)
        for i, path in enumerate(ctx.inputs):
            ctx.raise_if_cancelled()
            with open_pdf(path) as src:
                out.insert_pdf(src)
            ctx.report_progress(90 * (i + 1) / total)
        if ctx.options.get("compress"):
            return out.tobytes(garbage=3, deflate=True)
        return out.tobytes()
    finally:
        out.close()


def split(ctx: JobContext) -> Path:
    target = ctx.workdir / "pages.zip"
    with open_pdf(ctx.inputs[0]) as src:
        if ctx.options.get("mode", "all") == "ranges":
            ranges = parse_ranges(ctx.options.get("ranges", ""))
            _check_ranges(ranges, src.page_count)
        else:
            ranges = [(n, n) for n in range(1, src.page_count + 1)]
        with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for i, (start, end) in enumerate(ranges):
                ctx.raise_if_cancelled()
                part = fitz.open()
                try:
                    part.insert_pdf(src, from_page=start - 1, to_page=end - 1)
                    name = f"page-{start}.pdf" if start == end else f"pages-{start}-{end}.pdf"
                    zf.writestr(name, part.tobytes())
                finally:
                    part.close()
                ctx.report_progress(95 * (i + 1) / len(ranges))
    return target


def rotate(ctx: JobContext) -> bytes:
    degrees = int(ctx.options.get("degrees", 90))
    with open_pdf(ctx.inputs[0]) as doc:
        if "pages" in ctx.options:
            ranges = parse_ranges(ctx.options["pages"])
            _check_ranges(ranges, doc.page_count)
            numbers = sorted({n for start, end in ranges for n in range(start, end + 1)})
        else:
            numbers = list(range(1, doc.page_count + 1))
        for n in numbers:
            page = doc[n - 1]
            page.set_rotation((page.rotation + degrees) % 360)
        ctx.report_progress(80)
        return doc.tobytes()


def compress(ctx: JobContext) -> bytes:
    garbage = COMPRESSION_LEVELS[ctx.options.get("level", "recommended")]
    with open_pdf(ctx.inputs[0]) as doc:
        ctx.report_progress(20)
        return doc.tobytes(garbage=garbage, deflate=True, deflate_images=garbage >= 3, deflate_fonts=garbage >= 3)


def repair(ctx: JobContext) -> bytes:
    # MuPDF rebuilds a broken xref while opening; re-serializing writes a clean file.
    with open_pdf(ctx.inputs[0]) as doc:
        ctx.report_progress(30)
        return doc.tobytes(garbage=4, clean=True)
