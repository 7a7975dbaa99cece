import asyncio
import io
import zipfile

import pytest

from conftest import MP4_BYTES, stored_refs, write_script
from converty.config import Settings
from converty.converters import ConverterRegistry, Rasterizer, Transcoder, build_default_registry
from converty.converters.transcoder import audio_args, image_args, video_args
from converty.errors import ConversionTimeout, InputCorrupt, ProcessFailure, UnsupportedAtExecution
from converty.services.format_router import AdapterKind
from converty.services.formats import FormatTag

# Shell snippet: $last is the final argument (the output path or page prefix)
LAST_ARG = 'for last; do :; done'
WRITE_WEBM = LAST_ARG + "\nprintf '\\032\\105\\337\\243webm-payload' > \"$last\""
WRITE_PNG_PAGES = LAST_ARG + (
    "\nfor n in 1 2 3; do printf '\\211PNG\\r\\n\\032\\npage' > \"$last-$n.png\"; done"
)
WRITE_ONE_PNG = LAST_ARG + "\nprintf '\\211PNG\\r\\n\\032\\npage' > \"$last-1.png\""
WRITE_JPEG = LAST_ARG + "\nprintf '\\377\\330\\377\\340jpeg' > \"$last\""


def deadline_in(seconds: float) -> float:
    return asyncio.get_running_loop().time() + seconds


@pytest.fixture
async def mp4_ref(blob_store):
    return await blob_store.put(MP4_BYTES)


async def test_transcoder_success_writes_one_blob(tmp_path, blob_store, mp4_ref):
    adapter = Transcoder(blob_store, write_script(tmp_path, "ffmpeg", WRITE_WEBM))
    before = stored_refs(blob_store)

    output = await adapter.execute(mp4_ref, "video/webm", {"quality": 50}, deadline_in(5), source_format="video/mp4")

    assert output.media_type == "video/webm"
    assert stored_refs(blob_store) - before == {output.ref}
    data = await blob_store.get(output.ref)
    assert data.startswith(b"\x1a\x45\xdf\xa3")
    assert output.size == len(data)


async def test_timeout_kills_process(tmp_path, blob_store, mp4_ref):
    marker = tmp_path / "survived"
    script = write_script(tmp_path, "ffmpeg", f"sleep 30\ntouch {marker}")
    adapter = Transcoder(blob_store, script)
    before = stored_refs(blob_store)

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(ConversionTimeout):
        await adapter.execute(mp4_ref, "video/webm", {}, deadline_in(0.5))
    assert loop.time() - started < 5
    assert stored_refs(blob_store) == before
    assert not marker.exists()


async def test_deadline_already_passed(tmp_path, blob_store, mp4_ref):
    adapter = Transcoder(blob_store, write_script(tmp_path, "ffmpeg", WRITE_WEBM))
    with pytest.raises(ConversionTimeout):
        await adapter.execute(mp4_ref, "video/webm", {}, deadline_in(-1))


async def test_empty_output_is_a_process_failure(tmp_path, blob_store, mp4_ref):
    adapter = Transcoder(blob_store, write_script(tmp_path, "ffmpeg", LAST_ARG + '\n: > "$last"'))
    before = stored_refs(blob_store)
    with pytest.raises(ProcessFailure, match="empty"):
        await adapter.execute(mp4_ref, "video/webm", {}, deadline_in(5))
    assert stored_refs(blob_store) == before


async def test_wrong_signature_is_a_process_failure(tmp_path, blob_store, mp4_ref):
    adapter = Transcoder(blob_store, write_script(tmp_path, "ffmpeg", LAST_ARG + '\necho hello > "$last"'))
    with pytest.raises(ProcessFailure, match="does not look like"):
        await adapter.execute(mp4_ref, "video/webm", {}, deadline_in(5))


async def test_missing_output_is_a_process_failure(tmp_path, blob_store, mp4_ref):
    adapter = Transcoder(blob_store, write_script(tmp_path, "ffmpeg", "exit 0"))
    with pytest.raises(ProcessFailure, match="no output"):
        await adapter.execute(mp4_ref, "video/webm", {}, deadline_in(5))


async def test_corrupt_input_is_detected_from_stderr(tmp_path, blob_store, mp4_ref):
    script = write_script(
        tmp_path, "ffmpeg", "echo 'input.mp4: Invalid data found when processing input' >&2\nexit 1"
    )
    adapter = Transcoder(blob_store, script)
    with pytest.raises(InputCorrupt) as excinfo:
        await adapter.execute(mp4_ref, "video/webm", {}, deadline_in(5))
    assert not excinfo.value.retryable


async def test_other_nonzero_exit_is_a_process_failure(tmp_path, blob_store, mp4_ref):
    adapter = Transcoder(blob_store, write_script(tmp_path, "ffmpeg", "echo 'encoder exploded' >&2\nexit 3"))
    with pytest.raises(ProcessFailure, match="encoder exploded") as excinfo:
        await adapter.execute(mp4_ref, "video/webm", {}, deadline_in(5))
    assert excinfo.value.retryable


async def test_missing_binary_is_a_process_failure(tmp_path, blob_store, mp4_ref):
    adapter = Transcoder(blob_store, str(tmp_path / "no-such-ffmpeg"))
    with pytest.raises(ProcessFailure, match="cannot start"):
        await adapter.execute(mp4_ref, "video/webm", {}, deadline_in(5))


async def test_missing_source_blob_is_input_corrupt(tmp_path, blob_store):
    adapter = Transcoder(blob_store, write_script(tmp_path, "ffmpeg", WRITE_WEBM))
    with pytest.raises(InputCorrupt):
        await adapter.execute("0" * 64, "video/webm", {}, deadline_in(5))


async def test_temp_directory_is_removed(tmp_path, blob_store, mp4_ref):
    work = tmp_path / "work"
    work.mkdir()
    adapter = Transcoder(blob_store, write_script(tmp_path, "ffmpeg", "exit 1"), work_dir=str(work))
    with pytest.raises(ProcessFailure):
        await adapter.execute(mp4_ref, "video/webm", {}, deadline_in(5))
    assert list(work.iterdir()) == []


def test_transcoder_arguments():
    mp4 = video_args(FormatTag.MP4, {})
    assert mp4[:4] == ["-c:v", "libx264", "-crf", "23"]
    assert video_args(FormatTag.MP4, {"quality": 100})[3] == "0"
    webm = video_args(FormatTag.WEBM, {"width": 640})
    assert webm[:6] == ["-c:v", "libvpx-vp9", "-crf", "30", "-b:v", "0"]
    assert "scale=640:-2" in webm
    assert video_args(FormatTag.GIF, {})[:2] == ["-vf", "fps=10,scale=320:-1:flags=lanczos"]
    assert audio_args(FormatTag.MP3, {}) == ["-vn", "-c:a", "libmp3lame", "-q:a", "2"]
    assert audio_args(FormatTag.FLAC, {})[-2:] == ["-compression_level", "8"]

    args = Transcoder(None, "ffmpeg").build_args("in.mp4", "out.webm", FormatTag.WEBM, {})
    assert args[:5] == ["-hide_banner", "-nostdin", "-y", "-i", "in.mp4"]
    assert args[-1] == "out.webm"


def test_image_arguments():
    assert image_args(FormatTag.PNG, {}) == ["-frames:v", "1", "-update", "1"]
    assert image_args(FormatTag.JPEG, {}) == ["-frames:v", "1", "-q:v", "5", "-update", "1"]
    assert image_args(FormatTag.JPEG, {"quality": 100})[3] == "2"
    assert "scale=-2:120" in image_args(FormatTag.TIFF, {"height": 120})

    adapter = Transcoder(None, "ffmpeg")
    still = adapter.build_args("in.png", "out.gif", FormatTag.GIF, {}, source=FormatTag.PNG)
    assert "-loop" not in still and "-frames:v" in still
    animated = adapter.build_args("in.mp4", "out.gif", FormatTag.GIF, {}, source=FormatTag.MP4)
    assert "-loop" in animated


async def test_transcoder_converts_still_images(tmp_path, blob_store):
    png_ref = await blob_store.put(b"\x89PNG\r\n\x1a\nsource")
    adapter = Transcoder(blob_store, write_script(tmp_path, "ffmpeg", WRITE_JPEG))

    output = await adapter.execute(png_ref, "jpg", {"quality": 70}, deadline_in(5), source_format="image/png")

    assert output.media_type == "image/jpeg"
    assert (await blob_store.get(output.ref)).startswith(b"\xff\xd8\xff")


def test_rasterizer_arguments():
    adapter = Rasterizer(None, "pdftoppm")
    args = adapter.build_args("in.pdf", "/w/page", FormatTag.JPEG, {"dpi": 300, "first_page": 2, "last_page": 4})
    assert args == ["-jpeg", "-r", "300", "-f", "2", "-l", "4", "in.pdf", "/w/page"]
    assert adapter.build_args("in.pdf", "/w/page", FormatTag.PNG, {})[:3] == ["-png", "-r", "150"]


async def test_rasterizer_single_page_returns_image(tmp_path, blob_store):
    pdf_ref = await blob_store.put(b"%PDF-1.7 single")
    adapter = Rasterizer(blob_store, write_script(tmp_path, "pdftoppm", WRITE_ONE_PNG))

    output = await adapter.execute(pdf_ref, "png", {"first_page": 1, "last_page": 1}, deadline_in(5))

    assert output.media_type == "image/png"
    assert (await blob_store.get(output.ref)).startswith(b"\x89PNG")


async def test_rasterizer_multiple_pages_returns_zip(tmp_path, blob_store):
    pdf_ref = await blob_store.put(b"%PDF-1.7 multi")
    adapter = Rasterizer(blob_store, write_script(tmp_path, "pdftoppm", WRITE_PNG_PAGES))

    output = await adapter.execute(pdf_ref, "image/png", {}, deadline_in(5))

    assert output.media_type == "application/zip"
    with zipfile.ZipFile(io.BytesIO(await blob_store.get(output.ref))) as archive:
        assert archive.namelist() == ["page-1.png", "page-2.png", "page-3.png"]
        assert all(archive.read(name).startswith(b"\x89PNG") for name in archive.namelist())


async def test_rasterizer_corrupt_pdf(tmp_path, blob_store):
    pdf_ref = await blob_store.put(b"not really a pdf")
    script = write_script(tmp_path, "pdftoppm", "echo 'Syntax Error: May not be a PDF file (continuing anyway)' >&2\nexit 1")
    with pytest.raises(InputCorrupt):
        await Rasterizer(blob_store, script).execute(pdf_ref, "image/png", {}, deadline_in(5))


async def test_rasterizer_without_pages_fails(tmp_path, blob_store):
    pdf_ref = await blob_store.put(b"%PDF-1.7 empty")
    adapter = Rasterizer(blob_store, write_script(tmp_path, "pdftoppm", "exit 0"))
    with pytest.raises(ProcessFailure, match="no pages"):
        await adapter.execute(pdf_ref, "image/png", {}, deadline_in(5))


def test_default_registry(tmp_path, blob_store):
    settings = Settings(ffmpeg_path="/opt/ffmpeg", pdftoppm_path="/opt/pdftoppm", database_url="sqlite+aiosqlite://")
    registry = build_default_registry(blob_store, settings)
    assert isinstance(registry.get(AdapterKind.TRANSCODER), Transcoder)
    assert registry.get(AdapterKind.RASTERIZER).binary == "/opt/pdftoppm"


def test_registry_without_adapter_raises_unsupported():
    with pytest.raises(UnsupportedAtExecution):
        ConverterRegistry().get(AdapterKind.RASTERIZER)
