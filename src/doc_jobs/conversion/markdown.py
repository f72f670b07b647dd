from ..jobs.errors import ConversionError
from ..jobs.interfaces import JobContext


def to_markdown(ctx: JobContext) -> bytes:
    """Convert a document into Markdown with Docling.

    Docling is heavy and optional; it is imported on first use.
    """
    try:
        from docling.document_converter import DocumentConverter  # type: ignore
    except ImportError as e:
        raise ConversionError("unavailable", "markdown conversion is not installed on this server") from e

    converter = DocumentConverter()
    ctx.report_progress(5)
    try:
        result = converter.convert(str(ctx.inputs[0]))
    except Exception as e:
        raise ConversionError("bad_input", f"document could not be converted ({type(e).__name__})") from e
    ctx.raise_if_cancelled()

    # extraction across result shapes
    doc = getattr(result, "document", None)
    if doc is None:
        to_doc = getattr(result, "to_doc", None)
        doc = to_doc() if callable(to_doc) else result
    # markdown methods variants
    for m in ("export_to_markdown", "to_markdown", "as_markdown"):
        fn = getattr(doc, m, None)
        if callable(fn):
            return str(fn()).encode("utf-8")
    raise ConversionError("execution", "converted document lacks a markdown export")
