"""
Format router: decides which converter adapter handles a (source, target)
pair and which options that route accepts.

Pure and deterministic. Submission calls it to reject unsupported pairs
before a job exists; the worker calls it again at execution time.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from converty.errors import UnsupportedConversion, ValidationError
from converty.schemas.job import ConversionOptions
from converty.services.formats import FormatTag, parse_format


class AdapterKind(str, Enum):
    TRANSCODER = "transcoder"
    RASTERIZER = "rasterizer"


@dataclass(frozen=True)
class ConverterHandle:
    adapter: AdapterKind
    source: FormatTag
    target: FormatTag
    accepted_options: FrozenSet[str]


VIDEO_INPUT = (FormatTag.MP4, FormatTag.WEBM, FormatTag.AVI, FormatTag.MKV, FormatTag.MOV, FormatTag.WMV)
VIDEO_OUTPUT = (FormatTag.MP4, FormatTag.WEBM, FormatTag.AVI, FormatTag.GIF)
AUDIO_INPUT = (FormatTag.MP3, FormatTag.WAV, FormatTag.OGG, FormatTag.FLAC, FormatTag.AAC, FormatTag.M4A)
AUDIO_OUTPUT = (FormatTag.MP3, FormatTag.WAV, FormatTag.OGG, FormatTag.FLAC)
PDF_INPUT = (FormatTag.PDF,)
PDF_OUTPUT = (FormatTag.PNG, FormatTag.JPEG, FormatTag.TIFF)
IMAGE_INPUT = (FormatTag.PNG, FormatTag.JPEG, FormatTag.TIFF, FormatTag.GIF)
IMAGE_OUTPUT = (FormatTag.PNG, FormatTag.JPEG, FormatTag.TIFF, FormatTag.GIF)

VIDEO_OPTIONS = frozenset({"quality", "width", "height"})
AUDIO_OPTIONS = frozenset({"quality"})
RASTER_OPTIONS = frozenset({"dpi", "first_page", "last_page"})
IMAGE_OPTIONS = frozenset({"quality", "width", "height"})


def _build_table() -> Dict[Tuple[FormatTag, FormatTag], ConverterHandle]:
    table = {}
    groups = (
        (AdapterKind.TRANSCODER, VIDEO_INPUT, VIDEO_OUTPUT, VIDEO_OPTIONS),
        (AdapterKind.TRANSCODER, AUDIO_INPUT, AUDIO_OUTPUT, AUDIO_OPTIONS),
        (AdapterKind.RASTERIZER, PDF_INPUT, PDF_OUTPUT, RASTER_OPTIONS),
        # Still images go through ffmpeg as a single frame
        (AdapterKind.TRANSCODER, IMAGE_INPUT, IMAGE_OUTPUT, IMAGE_OPTIONS),
    )
    for adapter, sources, targets, accepted in groups:
        for source in sources:
            for target in targets:
                table[(source, target)] = ConverterHandle(adapter, source, target, accepted)
    return table


CAPABILITIES: Mapping[Tuple[FormatTag, FormatTag], ConverterHandle] = _build_table()


def route(source_format: str, target_format: str) -> ConverterHandle:
    """Pick the converter for a pair, raising UnsupportedConversion when none exists"""
    source = parse_format(source_format)
    target = parse_format(target_format)
    handle = CAPABILITIES.get((source, target)) if source and target else None
    if handle is None:
        raise UnsupportedConversion(_display(source_format), _display(target_format))
    return handle


def _display(value) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def is_supported(source_format: str, target_format: str) -> bool:
    try:
        route(source_format, target_format)
    except UnsupportedConversion:
        return False
    return True


def supported_targets(source_format: str) -> Tuple[FormatTag, ...]:
    source = parse_format(source_format)
    return tuple(target for (src, target) in CAPABILITIES if src == source)


def validate_options(handle: ConverterHandle, options: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Validate raw options against the closed schema and the route's accepted set.

    Returns only the options that were set, ready to persist.
    """
    try:
        parsed = ConversionOptions(**dict(options or {}))
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'options'}: {err['msg']}" for err in exc.errors()
        )
        raise ValidationError(f"Invalid options: {problems}") from exc

    provided = parsed.provided()
    rejected = sorted(set(provided) - handle.accepted_options)
    if rejected:
        raise ValidationError(
            f"Options {', '.join(rejected)} are not accepted for "
            f"{handle.source.value} -> {handle.target.value}"
        )
    return provided
