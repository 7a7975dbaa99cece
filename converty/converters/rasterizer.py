"""
PDF page rasterization through pdftoppm (poppler-utils).

A single rendered page is returned as an image; several pages are packed
into a zip archive whose members are each validated.
"""
import asyncio
import os
import zipfile
from typing import Any, Dict, List, Optional, Tuple

from converty.converters import signatures
from converty.converters.base import ConverterAdapter
from converty.errors import ProcessFailure
from converty.services.format_router import AdapterKind
from converty.services.formats import FormatTag

DEFAULT_DPI = 150
PAGE_PREFIX = "page"

_DEVICE_FLAGS = {
    FormatTag.PNG: "-png",
    FormatTag.JPEG: "-jpeg",
    FormatTag.TIFF: "-tiff",
}

# pdftoppm names pages <prefix>-<n>.<suffix>
_PAGE_SUFFIXES = {
    FormatTag.PNG: (".png",),
    FormatTag.JPEG: (".jpg", ".jpeg"),
    FormatTag.TIFF: (".tif", ".tiff"),
}


def _page_number(filename: str) -> int:
    stem = os.path.splitext(filename)[0]
    return int(stem.rsplit("-", 1)[-1])


def _build_archive(pages: List[str], archive_path: str, extension: str) -> None:
    with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for page in pages:
            archive.write(page, arcname=f"page-{_page_number(os.path.basename(page))}.{extension}")


class Rasterizer(ConverterAdapter):
    kind = AdapterKind.RASTERIZER
    corrupt_markers = (
        "Syntax Error",
        "Couldn't read xref table",
        "Couldn't find trailer dictionary",
        "May not be a PDF file",
        "PDF file is damaged",
        "Wrong page range",
        "Incorrect password",
    )

    def build_args(
        self, input_path: str, output_prefix: str, target: FormatTag, options: Dict[str, Any]
    ) -> List[str]:
        args = [_DEVICE_FLAGS[target], "-r", str(options.get("dpi") or DEFAULT_DPI)]
        if options.get("first_page") is not None:
            args += ["-f", str(options["first_page"])]
        if options.get("last_page") is not None:
            args += ["-l", str(options["last_page"])]
        return [*args, input_path, output_prefix]

    def _collect_pages(self, work_dir: str, target: FormatTag) -> List[str]:
        suffixes = _PAGE_SUFFIXES[target]
        names = [
            name for name in os.listdir(work_dir)
            if name.startswith(f"{PAGE_PREFIX}-") and name.lower().endswith(suffixes)
        ]
        return [os.path.join(work_dir, name) for name in sorted(names, key=_page_number)]

    async def _convert(
        self,
        input_path: str,
        work_dir: str,
        target: FormatTag,
        options: Dict[str, Any],
        deadline: float,
        source: Optional[FormatTag] = None,
    ) -> Tuple[str, FormatTag]:
        if target not in _DEVICE_FLAGS:
            raise ProcessFailure(f"rasterizer cannot produce {target.value}")

        prefix = os.path.join(work_dir, PAGE_PREFIX)
        await self._run_process(self.build_args(input_path, prefix, target, options), deadline)

        pages = self._collect_pages(work_dir, target)
        if not pages:
            raise ProcessFailure("rasterizer exited 0 but rendered no pages")
        for page in pages:
            self._check_output(page, target)

        if len(pages) == 1:
            return pages[0], target

        archive_path = os.path.join(work_dir, "pages.zip")
        await asyncio.to_thread(_build_archive, pages, archive_path, target.extension)
        if not signatures.zip_members_match(target, archive_path):
            raise ProcessFailure("rasterizer page archive failed validation")
        return archive_path, FormatTag.ZIP
