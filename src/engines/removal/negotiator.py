"""
Output Format Negotiation

Maps the client's requested output format to an OutputSpec. PNG is the
fallback because it keeps the alpha channel the cut-out depends on.
"""

from typing import Dict, Optional

from src.core.config import settings
from src.engines.removal.schemas import OutputFormat, OutputSpec

# Accepted spellings, compared lower-cased
FORMAT_ALIASES: Dict[str, OutputFormat] = {
    "png": OutputFormat.PNG,
    "jpeg": OutputFormat.JPEG,
    "jpg": OutputFormat.JPEG,
    "webp": OutputFormat.WEBP,
}

_ENCODINGS: Dict[OutputFormat, Dict[str, str]] = {
    OutputFormat.PNG: {"mime_type": "image/png", "extension": "png", "pil_format": "PNG"},
    OutputFormat.JPEG: {"mime_type": "image/jpeg", "extension": "jpg", "pil_format": "JPEG"},
    OutputFormat.WEBP: {"mime_type": "image/webp", "extension": "webp", "pil_format": "WEBP"},
}


def parse_output_format(requested: Optional[str]) -> Optional[OutputFormat]:
    if requested is None:
        return None
    return FORMAT_ALIASES.get(requested.strip().lower())


def quality_for(output_format: OutputFormat) -> float:
    if output_format == OutputFormat.JPEG:
        return settings.JPEG_QUALITY
    return settings.LOSSLESS_QUALITY


def build_output_spec(output_format: OutputFormat) -> OutputSpec:
    return OutputSpec(
        format=output_format,
        quality=quality_for(output_format),
        **_ENCODINGS[output_format]
    )


def resolve_output_spec(requested: Optional[str] = None) -> OutputSpec:
    """
    Resolve a requested format string to an OutputSpec.

    Never fails: missing or unrecognised values fall back to the configured
    default format, and to PNG if that default is itself unrecognised.
    """
    output_format = (
        parse_output_format(requested)
        or parse_output_format(settings.DEFAULT_OUTPUT_FORMAT)
        or OutputFormat.PNG
    )
    return build_output_spec(output_format)
