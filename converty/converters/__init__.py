# Converter adapters
from typing import Dict, Mapping, Optional

from converty.config import Settings
from converty.converters.base import ConversionOutput, ConverterAdapter
from converty.converters.rasterizer import Rasterizer
from converty.converters.transcoder import Transcoder
from converty.errors import UnsupportedAtExecution
from converty.services.blob_store import BlobStore
from converty.services.format_router import AdapterKind


class ConverterRegistry:
    """Adapter instances by kind, shared by every worker in a pool"""

    def __init__(self, adapters: Optional[Mapping[AdapterKind, ConverterAdapter]] = None) -> None:
        self._adapters: Dict[AdapterKind, ConverterAdapter] = dict(adapters or {})

    def register(self, kind: AdapterKind, adapter: ConverterAdapter) -> None:
        self._adapters[kind] = adapter

    def get(self, kind: AdapterKind) -> ConverterAdapter:
        try:
            return self._adapters[kind]
        except KeyError:
            raise UnsupportedAtExecution(f"No converter registered for {kind.value}")

    def __contains__(self, kind: object) -> bool:
        return kind in self._adapters


def build_default_registry(blob_store: BlobStore, settings: Settings) -> ConverterRegistry:
    common = dict(
        store_retry_attempts=settings.store_retry_attempts,
        store_retry_base_seconds=settings.store_retry_base_seconds,
    )
    return ConverterRegistry({
        AdapterKind.TRANSCODER: Transcoder(blob_store, settings.ffmpeg_path, **common),
        AdapterKind.RASTERIZER: Rasterizer(blob_store, settings.pdftoppm_path, **common),
    })


__all__ = [
    "ConversionOutput",
    "ConverterAdapter",
    "ConverterRegistry",
    "Rasterizer",
    "Transcoder",
    "build_default_registry",
]
