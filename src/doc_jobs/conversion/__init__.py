"""
Built-in conversion tools.
Each tool is a blocking function of a JobContext; the job engine runs it on
a worker thread and stores whatever it returns as the job's artifact.
"""

from ..jobs.registry import ConversionRegistry, ToolSpec
from . import pdf_tools
from .markdown import to_markdown


def default_registry() -> ConversionRegistry:
    return ConversionRegistry([
        ToolSpec(
            name="merge",
            fn=pdf_tools.merge,
            min_inputs=2,
            max_inputs=None,
            download_name="merged-document.pdf",
        ),
        ToolSpec(
            name="split",
            fn=pdf_tools.split,
            extension="zip",
            media_type="application/zip",
            download_name="split-pages.zip",
            validate_options=pdf_tools.validate_split_options,
        ),
        ToolSpec(
            name="rotate",
            fn=pdf_tools.rotate,
            download_name="rotated-document.pdf",
            validate_options=pdf_tools.validate_rotate_options,
        ),
        ToolSpec(
            name="compress",
            fn=pdf_tools.compress,
            download_name="compressed-document.pdf",
            validate_options=pdf_tools.validate_compress_options,
        ),
        ToolSpec(
            name="repair",
            fn=pdf_tools.repair,
            download_name="repaired-document.pdf",
        ),
        ToolSpec(
            name="markdown",
            fn=to_markdown,
            extension="md",
            media_type="text/markdown",
            download_name="conversion.md",
        ),
    ])


__all__ = ["default_registry"]
