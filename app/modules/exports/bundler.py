"""
Zip bundling of exported artifacts
"""

import logging
import os
import tempfile
import zipfile
from typing import List, Sequence

from app.modules.exports.context import ExportContext
from app.modules.exports.errors import ExportError, ZipFailure
from app.modules.exports.naming import FilenameAllocator, join
from app.modules.exports.schemas import ArchiveMetadata, ExportArtifact
from app.modules.exports.storage import ArtifactStore

logger = logging.getLogger(__name__)


def _entry_name(filename: str, used: set) -> str:
    name = filename
    stem, ext = os.path.splitext(filename)
    counter = 2
    while name in used:
        name = f"{stem}_{counter}{ext}"
        counter += 1
    used.add(name)
    return name


class ArchiveBundler:
    """Packs already stored artifacts into one zip archive in the store"""

    def __init__(self, store: ArtifactStore):
        self.store = store

    def bundle(self, artifacts: Sequence[ExportArtifact], name: str, context: ExportContext) -> ArchiveMetadata:
        """Stream ``artifacts`` into ``exports/zip/{yyyy}/{mm}/{name}``.

        Raises:
            ZipFailure: the archive could not be built or persisted
        """
        if not artifacts:
            raise ZipFailure("No artifacts to bundle")

        now = context.now()
        storage_path = join(FilenameAllocator.zip_directory(now), name)
        entries: List[str] = []
        used: set = set()

        try:
            with tempfile.TemporaryFile() as tmp:
                with zipfile.ZipFile(tmp, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
                    for artifact in artifacts:
                        entry = _entry_name(artifact.filename, used)
                        archive.writestr(entry, self.store.get(artifact.storage_path))
                        entries.append(entry)
                tmp.seek(0)
                data = tmp.read()
            size = self.store.put(storage_path, data, content_type="application/zip")
            download_url = self.store.url(storage_path)
        except (ExportError, OSError, zipfile.BadZipFile) as e:
            logger.error(f"Could not create archive {name}: {e}")
            raise ZipFailure(f"Could not create archive {name}: {e}") from e

        logger.info(f"Created archive {storage_path} with {len(entries)} files")
        return ArchiveMetadata(
            filename=name,
            storage_path=storage_path,
            size=size,
            file_count=len(entries),
            entries=tuple(entries),
            created_at=now,
            download_url=download_url
        )
