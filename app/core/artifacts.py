"""Temporäre Dateien für Downloads und Uploads: Anlegen, garantiertes
Aufräumen und Ableitung von Dateiendung bzw. Dify-Dateityp."""
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import PurePosixPath
from typing import Iterator
from urllib.parse import urlparse

from app.core.errors import LocalIOError

logger = logging.getLogger(__name__)

_FILE_TYPES = {
    "image": {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp"},
    "audio": {".mp3", ".wav", ".aac", ".flac"},
    "video": {".mp4", ".avi", ".mov", ".wmv", ".flv"},
    "text": {".txt", ".md", ".csv", ".json", ".xml"},
}


@contextmanager
def scratch_file(prefix: str, suffix: str = "") -> Iterator[str]:
    """Legt eine leere temporäre Datei an und löscht sie beim Verlassen.

    Das Löschen passiert auf jedem Pfad (Erfolg, Degradierung, Fehler);
    scheitert es, wird nur geloggt.
    """
    try:
        fd, path = tempfile.mkstemp(prefix=prefix, suffix=suffix)
    except OSError as exc:
        raise LocalIOError(f"failed to create temporary file: {exc}") from exc
    os.close(fd)

    try:
        yield path
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning(f"Failed to remove temporary file {path}: {exc}")


def extension_from_url(url: str, default: str) -> str:
    # Query und Fragment gehören nicht zur Endung.
    try:
        path = urlparse(url).path
    except ValueError:
        logger.warning(f"Cannot parse url '{url}', using extension '{default}'")
        return default
    return PurePosixPath(path).suffix or default


def file_type_from_path(file_path: str) -> str:
    """Ordnet eine lokale Datei dem Dify-Dateityp zu (image, audio, ...)."""
    ext = os.path.splitext(file_path)[1].lower()
    for file_type, extensions in _FILE_TYPES.items():
        if ext in extensions:
            return file_type
    return "other"
