"""
Audio, video and still-image transcoding through ffmpeg.
"""
import os
from typing import Any, Dict, List, Optional, Tuple

from converty.converters.base import ConverterAdapter
from converty.services.format_router import AdapterKind
from converty.services.formats import FormatCategory, FormatTag

DEFAULT_MP4_CRF = 23
DEFAULT_WEBM_CRF = 30
DEFAULT_MP3_QUALITY = 2
DEFAULT_OGG_QUALITY = 5
GIF_FILTER = "fps=10,scale={width}:-1:flags=lanczos"
GIF_DEFAULT_WIDTH = 320
DEFAULT_JPEG_QUALITY = 85


def _scaled(quality: int, worst: int) -> int:
    """Map quality 1-100 onto an encoder scale where 0 is best and worst is worst"""
    return max(0, worst - quality * worst // 100)


def _scale_filter(options: Dict[str, Any]) -> List[str]:
    width = options.get("width")
    height = options.get("height")
    if width is None and height is None:
        return []
    # -2 keeps aspect ratio and an even dimension for yuv420p encoders
    return ["-vf", f"scale={width or -2}:{height or -2}"]


def video_args(target: FormatTag, options: Dict[str, Any]) -> List[str]:
    quality = options.get("quality")
    if target == FormatTag.MP4:
        crf = _scaled(quality, 51) if quality is not None else DEFAULT_MP4_CRF
        return ["-c:v", "libx264", "-crf", str(crf), "-pix_fmt", "yuv420p",
                *_scale_filter(options), "-c:a", "aac"]
    if target == FormatTag.WEBM:
        crf = _scaled(quality, 63) if quality is not None else DEFAULT_WEBM_CRF
        return ["-c:v", "libvpx-vp9", "-crf", str(crf), "-b:v", "0",
                *_scale_filter(options), "-c:a", "libopus"]
    if target == FormatTag.AVI:
        return ["-c:v", "mpeg4", *_scale_filter(options), "-c:a", "libmp3lame"]
    if target == FormatTag.GIF:
        width = options.get("width") or GIF_DEFAULT_WIDTH
        return ["-vf", GIF_FILTER.format(width=width), "-loop", "0"]
    return []


def image_args(target: FormatTag, options: Dict[str, Any]) -> List[str]:
    """One still frame out; no animation, no default resize"""
    args = ["-frames:v", "1", *_scale_filter(options)]
    if target == FormatTag.JPEG:
        quality = options.get("quality", DEFAULT_JPEG_QUALITY)
        # mjpeg -q:v: 2 best, 31 worst
        args += ["-q:v", str(max(2, _scaled(quality, 31)))]
    return [*args, "-update", "1"]


def audio_args(target: FormatTag, options: Dict[str, Any]) -> List[str]:
    quality = options.get("quality")
    if target == FormatTag.MP3:
        # libmp3lame VBR: 0 best, 9 worst
        q = _scaled(quality, 9) if quality is not None else DEFAULT_MP3_QUALITY
        return ["-vn", "-c:a", "libmp3lame", "-q:a", str(q)]
    if target == FormatTag.OGG:
        # libvorbis: 0 worst, 10 best
        q = quality * 10 // 100 if quality is not None else DEFAULT_OGG_QUALITY
        return ["-vn", "-c:a", "libvorbis", "-q:a", str(q)]
    if target == FormatTag.FLAC:
        return ["-vn", "-c:a", "flac", "-compression_level", "8"]
    if target == FormatTag.WAV:
        return ["-vn", "-c:a", "pcm_s16le"]
    return []


class Transcoder(ConverterAdapter):
    kind = AdapterKind.TRANSCODER
    corrupt_markers = (
        "Invalid data found when processing input",
        "moov atom not found",
        "could not find codec parameters",
        "EBML header parsing failed",
        "Header missing",
    )

    def build_args(
        self,
        input_path: str,
        output_path: str,
        target: FormatTag,
        options: Dict[str, Any],
        source: Optional[FormatTag] = None,
    ) -> List[str]:
        if target.category == FormatCategory.AUDIO:
            codec_args = audio_args(target, options)
        elif source is not None and source.category == FormatCategory.IMAGE:
            codec_args = image_args(target, options)
        else:
            codec_args = video_args(target, options)
        return ["-hide_banner", "-nostdin", "-y", "-i", input_path, *codec_args, output_path]

    async def _convert(
        self,
        input_path: str,
        work_dir: str,
        target: FormatTag,
        options: Dict[str, Any],
        deadline: float,
        source: Optional[FormatTag] = None,
    ) -> Tuple[str, FormatTag]:
        output_path = os.path.join(work_dir, f"output.{target.extension}")
        args = self.build_args(input_path, output_path, target, options, source=source)
        await self._run_process(args, deadline)
        self._check_output(output_path, target)
        return output_path, target
