"""Source collection capability and a filesystem-backed implementation.

The pipeline only depends on the :class:`BlobSource` protocol: list
objects, open one for reading, check existence.  Authentication and
connection details belong to the concrete implementation.
"""

from __future__ import annotations

import logging
import mimetypes
import os
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Protocol, runtime_checkable

from blobsync.exceptions import SourceError, SourceNotFoundError
from blobsync.models import BlobObject

logger = logging.getLogger(__name__)


@runtime_checkable
class BlobSource(Protocol):
    """Read-only view of an object collection."""

    def list(self, prefix: str | None = None) -> Iterator[BlobObject]:
        """Yield every object whose name starts with *prefix* (all objects if None).

        Raises:
            SourceError: If the collection cannot be listed.
        """
        ...

    def open(self, name: str) -> BinaryIO:
        """Open the named object for binary reading.

        Raises:
            SourceNotFoundError: If the object does not exist.
            SourceError: On any other access failure.
        """
        ...

    def exists(self, name: str) -> bool:
        ...


class LocalBlobSource:
    """Treats a directory tree as an object collection.

    Object names are POSIX-style paths relative to *root*.  Hidden files
    and directories are skipped, matching what a storage listing would
    not surface.

    Usage::

        source = LocalBlobSource(Path("/data/archive"))
        for obj in source.list(prefix="IRIS_Data_"):
            print(obj.name, obj.modified_at)
    """

    def __init__(self, root: Path | str, skip_hidden: bool = True) -> None:
        self.root = Path(root)
        self.skip_hidden = skip_hidden

    def _resolve(self, name: str) -> Path:
        path = (self.root / name).resolve()
        root = self.root.resolve()
        if root not in path.parents:
            raise SourceNotFoundError(f"Object name escapes the collection root: {name}")
        return path

    def _to_object(self, path: Path, name: str) -> BlobObject:
        st = path.stat()
        modified_at = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
        # st_birthtime is only reported on some platforms
        birthtime = getattr(st, "st_birthtime", None)
        created_at = (
            datetime.fromtimestamp(birthtime, tz=timezone.utc)
            if birthtime is not None
            else None
        )
        content_type, _ = mimetypes.guess_type(name)
        return BlobObject(
            name=name,
            size=st.st_size,
            content_type=content_type,
            etag=f'"{st.st_mtime_ns:x}-{st.st_size:x}"',
            created_at=created_at,
            modified_at=modified_at,
            url=path.as_uri(),
        )

    def list(self, prefix: str | None = None) -> Iterator[BlobObject]:
        if not self.root.is_dir():
            raise SourceError(f"Source collection root is not a directory: {self.root}")

        objects: list[BlobObject] = []
        try:
            for dirpath, dirnames, filenames in os.walk(str(self.root)):
                if self.skip_hidden:
                    # Prune hidden directories IN-PLACE
                    dirnames[:] = [d for d in dirnames if not d.startswith(".")]
                dirnames.sort()

                current = Path(dirpath)
                for filename in sorted(filenames):
                    if self.skip_hidden and filename.startswith("."):
                        continue
                    full_path = current / filename
                    name = full_path.relative_to(self.root).as_posix()
                    if prefix and not name.startswith(prefix):
                        continue
                    objects.append(self._to_object(full_path, name))
        except OSError as e:
            raise SourceError(f"Failed to list {self.root}: {e}") from e

        logger.debug("Listed %d objects under %s (prefix=%r)", len(objects), self.root, prefix)
        return iter(objects)

    def open(self, name: str) -> BinaryIO:
        path = self._resolve(name)
        try:
            return open(path, "rb")
        except FileNotFoundError as e:
            raise SourceNotFoundError(f"Object does not exist: {name}") from e
        except OSError as e:
            raise SourceError(f"Failed to open {name}: {e}") from e

    def exists(self, name: str) -> bool:
        try:
            return self._resolve(name).is_file()
        except SourceNotFoundError:
            return False
