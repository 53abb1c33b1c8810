"""
Download archive builder: zips the completed visuals of one generation.

The archive is planned first, so an empty download fails before any bytes
are sent, then streamed entry by entry.
"""
import io
import logging
import zipfile
from typing import AsyncIterator, List, Optional, Tuple

from photostudio.database.models import Generation, VisualStatus
from photostudio.exceptions import ValidationError
from photostudio.services.storage import LocalFileStorage, extension_from_mime
from photostudio.utils.validators import sanitize_name

logger = logging.getLogger(__name__)


def archive_filename(generation_id: str) -> str:
    return f"generation-{generation_id}.zip"


def entry_names(generation: Generation, collection_name: Optional[str], product_name: Optional[str]) -> List[Tuple[int, str]]:
    """
    Archive paths for completed visuals, as (visual index, path) pairs.

    Paths follow collection/product/slot.ext; a slot name that repeats gets
    the visual index appended.
    """
    folder = f"{sanitize_name(collection_name, fallback='no_collection')}/{sanitize_name(product_name, fallback='product')}"
    names = []
    used = set()

    for position, visual in enumerate(generation.visuals or []):
        if visual.get("status") != VisualStatus.COMPLETED.value:
            continue
        slot = sanitize_name(visual.get("type"), fallback=f"visual_{position + 1}")
        extension = extension_from_mime(visual.get("mime_type"))
        name = f"{folder}/{slot}.{extension}"
        if name in used:
            name = f"{folder}/{slot}_{position}.{extension}"
        used.add(name)
        names.append((position, name))

    return names


def plan_archive(
    generation: Generation,
    storage: LocalFileStorage,
    collection_name: Optional[str] = None,
    product_name: Optional[str] = None
) -> List[Tuple[str, str]]:
    """
    Pick the files that go into the archive.

    Returns:
        (archive name, file path) pairs

    Raises:
        ValidationError: If no visual can be packaged
    """
    visuals = generation.visuals or []
    entries = []

    for position, name in entry_names(generation, collection_name, product_name):
        path = visuals[position].get("image_path")
        if not storage.exists(path):
            logger.warning(f"Generation {generation.id} | Image for visual {position} is missing ({path}), skipping")
            continue
        entries.append((name, path))

    if not entries:
        raise ValidationError("No completed visuals to download", code="NO_COMPLETED_VISUALS")
    return entries


class _ChunkSink(io.RawIOBase):
    """Write-only, unseekable target; zipfile then emits data descriptors"""

    def __init__(self):
        super().__init__()
        self._chunks: List[bytes] = []

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


async def stream_archive(entries: List[Tuple[str, str]], storage: LocalFileStorage) -> AsyncIterator[bytes]:
    """Yield zip bytes as each entry is compressed, central directory last"""
    sink = _ChunkSink()
    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, path in entries:
            try:
                data = await storage.read(path)
            except OSError as e:
                # Headers are already sent, so a vanished file can only be left out
                logger.warning(f"Archive entry {name} could not be read ({e}), skipping")
                continue
            zf.writestr(name, data)
            chunk = sink.drain()
            if chunk:
                yield chunk

    tail = sink.drain()
    if tail:
        yield tail
