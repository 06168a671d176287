from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from typing_extensions import Protocol

from .config import Settings
from .database import db_session, init_db
from .errors import StorageAccessError
from .models import StoredBlob

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """Key-value store holding whole serialized snapshots."""

    def read(self, key: str) -> Optional[str]: ...

    def write(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class SqlBlobStore:
    """One row per key in the ``stored_blobs`` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory

    def read(self, key: str) -> Optional[str]:
        try:
            with db_session(self._session_factory) as session:
                record = session.get(StoredBlob, key)
                return record.value if record else None
        except SQLAlchemyError as exc:
            raise StorageAccessError(f"Could not read {key!r}: {exc}") from exc

    def write(self, key: str, value: str) -> None:
        try:
            with db_session(self._session_factory) as session:
                record = session.query(StoredBlob).filter(StoredBlob.key == key).one_or_none()
                if record:
                    record.value = value
                else:
                    session.add(StoredBlob(key=key, value=value))
        except SQLAlchemyError as exc:
            raise StorageAccessError(f"Could not write {key!r}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            with db_session(self._session_factory) as session:
                session.query(StoredBlob).filter(StoredBlob.key == key).delete()
        except SQLAlchemyError as exc:
            raise StorageAccessError(f"Could not delete {key!r}: {exc}") from exc


class JsonFileBlobStore:
    """One ``<key>.json`` file per key, replaced atomically on write."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def read(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageAccessError(f"Could not read {path}: {exc}") from exc

    def write(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageAccessError(f"Could not write {path}: {exc}") from exc

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageAccessError(f"Could not delete {path}: {exc}") from exc


def build_blob_store(config: Settings) -> BlobStore:
    if config.storage_backend == "sqlite":
        init_db()
        logger.info("Using SQLite storage at %s", config.sqlite_path)
        return SqlBlobStore()
    if config.storage_backend == "json":
        logger.info("Using JSON file storage in %s", config.json_dir)
        return JsonFileBlobStore(config.json_dir)
    raise NotImplementedError(f"Unknown storage backend: {config.storage_backend}")
