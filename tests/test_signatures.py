import zipfile

from conftest import MP3_BYTES, MP4_BYTES, WEBM_BYTES
from converty.converters.signatures import matches, zip_members_match
from converty.services.formats import FormatTag


def test_known_headers():
    assert matches(FormatTag.MP4, MP4_BYTES)
    assert matches(FormatTag.WEBM, WEBM_BYTES)
    assert matches(FormatTag.MP3, MP3_BYTES)
    assert matches(FormatTag.MP3, b"\xff\xfb\x90\x00")
    assert matches(FormatTag.WAV, b"RIFF\x24\x00\x00\x00WAVEfmt ")
    assert matches(FormatTag.PNG, b"\x89PNG\r\n\x1a\n....")
    assert matches(FormatTag.GIF, b"GIF89a....")


def test_foreign_headers_are_rejected():
    assert not matches(FormatTag.WEBM, MP4_BYTES)
    assert not matches(FormatTag.AVI, b"RIFF\x24\x00\x00\x00WAVE")
    assert not matches(FormatTag.PNG, b"")
    assert not matches(FormatTag.MP4, b"short")


def test_page_archive_members_are_checked(tmp_path):
    good = tmp_path / "good.zip"
    with zipfile.ZipFile(good, "w") as archive:
        archive.writestr("page-1.png", b"\x89PNG\r\n\x1a\nimage")
    assert zip_members_match(FormatTag.PNG, str(good))
    assert not zip_members_match(FormatTag.JPEG, str(good))

    empty = tmp_path / "empty.zip"
    with zipfile.ZipFile(empty, "w"):
        pass
    assert not zip_members_match(FormatTag.PNG, str(empty))

    not_zip = tmp_path / "plain.zip"
    not_zip.write_bytes(b"hello")
    assert not zip_members_match(FormatTag.PNG, str(not_zip))
