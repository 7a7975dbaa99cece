"""
Structural signatures (magic bytes) for converter outputs.

Converters can exit 0 after writing a truncated or foreign file; an output
only counts as a success when its header matches the requested format.
"""
import zipfile
from typing import Callable, Dict

from converty.services.formats import FormatTag

HEADER_BYTES = 64


def _mp4(head: bytes) -> bool:
    return len(head) >= 12 and head[4:8] == b"ftyp"


def _ebml(head: bytes) -> bool:
    return head.startswith(b"\x1a\x45\xdf\xa3")


def _riff(form: bytes) -> Callable[[bytes], bool]:
    def check(head: bytes) -> bool:
        return len(head) >= 12 and head[:4] == b"RIFF" and head[8:12] == form
    return check


def _mp3(head: bytes) -> bool:
    if head.startswith(b"ID3"):
        return True
    # MPEG audio frame sync: 11 set bits
    return len(head) >= 2 and head[0] == 0xFF and (head[1] & 0xE0) == 0xE0


def _prefix(*magics: bytes) -> Callable[[bytes], bool]:
    def check(head: bytes) -> bool:
        return any(head.startswith(magic) for magic in magics)
    return check


SIGNATURES: Dict[FormatTag, Callable[[bytes], bool]] = {
    FormatTag.MP4: _mp4,
    FormatTag.MOV: _mp4,
    FormatTag.M4A: _mp4,
    FormatTag.WEBM: _ebml,
    FormatTag.MKV: _ebml,
    FormatTag.AVI: _riff(b"AVI "),
    FormatTag.WAV: _riff(b"WAVE"),
    FormatTag.GIF: _prefix(b"GIF87a", b"GIF89a"),
    FormatTag.MP3: _mp3,
    FormatTag.OGG: _prefix(b"OggS"),
    FormatTag.FLAC: _prefix(b"fLaC"),
    FormatTag.PNG: _prefix(b"\x89PNG\r\n\x1a\n"),
    FormatTag.JPEG: _prefix(b"\xff\xd8\xff"),
    FormatTag.TIFF: _prefix(b"II*\x00", b"MM\x00*"),
    FormatTag.PDF: _prefix(b"%PDF-"),
    FormatTag.ZIP: _prefix(b"PK\x03\x04"),
}


def matches(target: FormatTag, head: bytes) -> bool:
    """True when head looks like the start of a target file. Unknown formats only need to be non-empty."""
    check = SIGNATURES.get(target)
    if check is None:
        return len(head) > 0
    return check(head)


def file_matches(target: FormatTag, path: str) -> bool:
    with open(path, "rb") as f:
        return matches(target, f.read(HEADER_BYTES))


def zip_members_match(target: FormatTag, path: str) -> bool:
    """Every member of a page archive must itself be a valid target file"""
    if not file_matches(FormatTag.ZIP, path):
        return False
    try:
        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
            if not names:
                return False
            for name in names:
                with archive.open(name) as member:
                    if not matches(target, member.read(HEADER_BYTES)):
                        return False
    except zipfile.BadZipFile:
        return False
    return True
