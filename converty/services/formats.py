"""
Format tags and normalization.

Every format the service knows is a FormatTag whose value is its MIME type.
Clients may name a format by MIME type or by file extension; both are
normalized here, case-insensitively.
"""
from enum import Enum
from pathlib import PurePosixPath
from typing import Optional

from converty.errors import ValidationError


class FormatCategory(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    IMAGE = "image"
    ARCHIVE = "archive"


class FormatTag(str, Enum):
    # Video
    MP4 = "video/mp4"
    WEBM = "video/webm"
    AVI = "video/x-msvideo"
    MKV = "video/x-matroska"
    MOV = "video/quicktime"
    WMV = "video/x-ms-wmv"
    # Audio
    MP3 = "audio/mpeg"
    WAV = "audio/wav"
    OGG = "audio/ogg"
    FLAC = "audio/flac"
    AAC = "audio/aac"
    M4A = "audio/mp4"
    # Documents
    PDF = "application/pdf"
    # Images
    PNG = "image/png"
    JPEG = "image/jpeg"
    TIFF = "image/tiff"
    GIF = "image/gif"
    # Archives (multi-page rasterizer output)
    ZIP = "application/zip"

    @property
    def category(self) -> FormatCategory:
        return _CATEGORIES[self]

    @property
    def extension(self) -> str:
        return _PRIMARY_EXTENSION[self]


_CATEGORIES = {
    FormatTag.MP4: FormatCategory.VIDEO,
    FormatTag.WEBM: FormatCategory.VIDEO,
    FormatTag.AVI: FormatCategory.VIDEO,
    FormatTag.MKV: FormatCategory.VIDEO,
    FormatTag.MOV: FormatCategory.VIDEO,
    FormatTag.WMV: FormatCategory.VIDEO,
    FormatTag.MP3: FormatCategory.AUDIO,
    FormatTag.WAV: FormatCategory.AUDIO,
    FormatTag.OGG: FormatCategory.AUDIO,
    FormatTag.FLAC: FormatCategory.AUDIO,
    FormatTag.AAC: FormatCategory.AUDIO,
    FormatTag.M4A: FormatCategory.AUDIO,
    FormatTag.PDF: FormatCategory.DOCUMENT,
    FormatTag.PNG: FormatCategory.IMAGE,
    FormatTag.JPEG: FormatCategory.IMAGE,
    FormatTag.TIFF: FormatCategory.IMAGE,
    FormatTag.GIF: FormatCategory.IMAGE,
    FormatTag.ZIP: FormatCategory.ARCHIVE,
}

_EXTENSIONS = {
    "mp4": FormatTag.MP4,
    "m4v": FormatTag.MP4,
    "webm": FormatTag.WEBM,
    "avi": FormatTag.AVI,
    "mkv": FormatTag.MKV,
    "mov": FormatTag.MOV,
    "wmv": FormatTag.WMV,
    "mp3": FormatTag.MP3,
    "wav": FormatTag.WAV,
    "ogg": FormatTag.OGG,
    "flac": FormatTag.FLAC,
    "aac": FormatTag.AAC,
    "m4a": FormatTag.M4A,
    "pdf": FormatTag.PDF,
    "png": FormatTag.PNG,
    "jpg": FormatTag.JPEG,
    "jpeg": FormatTag.JPEG,
    "tif": FormatTag.TIFF,
    "tiff": FormatTag.TIFF,
    "gif": FormatTag.GIF,
    "zip": FormatTag.ZIP,
}

# Common MIME aliases seen from browsers and upload clients
_MIME_ALIASES = {
    "audio/mp3": FormatTag.MP3,
    "audio/x-wav": FormatTag.WAV,
    "audio/wave": FormatTag.WAV,
    "audio/x-flac": FormatTag.FLAC,
    "audio/x-m4a": FormatTag.M4A,
    "image/jpg": FormatTag.JPEG,
    "video/avi": FormatTag.AVI,
    "application/x-zip-compressed": FormatTag.ZIP,
}

_PRIMARY_EXTENSION = {
    FormatTag.MP4: "mp4",
    FormatTag.WEBM: "webm",
    FormatTag.AVI: "avi",
    FormatTag.MKV: "mkv",
    FormatTag.MOV: "mov",
    FormatTag.WMV: "wmv",
    FormatTag.MP3: "mp3",
    FormatTag.WAV: "wav",
    FormatTag.OGG: "ogg",
    FormatTag.FLAC: "flac",
    FormatTag.AAC: "aac",
    FormatTag.M4A: "m4a",
    FormatTag.PDF: "pdf",
    FormatTag.PNG: "png",
    FormatTag.JPEG: "jpg",
    FormatTag.TIFF: "tiff",
    FormatTag.GIF: "gif",
    FormatTag.ZIP: "zip",
}


def parse_format(value: str) -> Optional[FormatTag]:
    """Best-effort lookup by MIME type or extension; None when unknown"""
    if not value:
        return None
    key = value.strip().lower()
    # Drop MIME parameters such as "; codecs=vp9"
    key = key.split(";", 1)[0].strip()
    try:
        return FormatTag(key)
    except ValueError:
        pass
    if key in _MIME_ALIASES:
        return _MIME_ALIASES[key]
    return _EXTENSIONS.get(key.lstrip("."))


def normalize_format(value: str) -> FormatTag:
    """Normalize a MIME type or extension to a FormatTag, raising ValidationError if unknown"""
    tag = parse_format(value)
    if tag is None:
        raise ValidationError(f"Unknown format: {value!r}")
    return tag


def format_from_filename(filename: str) -> Optional[FormatTag]:
    suffix = PurePosixPath(filename or "").suffix
    return parse_format(suffix) if suffix else None
