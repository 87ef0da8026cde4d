"""Backend de stockage local (filesystem), utilisé en développement ou sur un seul hôte."""

from __future__ import annotations

import os
import shutil
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from certstore.config import Settings

from .base import KeyInfo, StorageBackend
from .errors import KeyNotFoundError, StorageTransportError
from .keys import SEPARATOR, is_lock_key, is_terminal, lock_key, normalize_key
from .locking import LockRecord

logger = structlog.get_logger(__name__)


class LocalStorageBackend(StorageBackend):
    """
    Backend filesystem qui reproduit la structure du bucket sur disque.

    Les objets sont stockés sous base_dir/{prefix}/{key}. Les locks sont des
    fichiers créés de façon exclusive : seuls les processus partageant le même
    disque s'excluent mutuellement. Une flotte multi-hôtes doit passer par S3.
    """

    def __init__(self, base_dir: str | Path, prefix: str = "", **lock_options: Any) -> None:
        super().__init__(prefix, **lock_options)
        self.base_dir = Path(base_dir)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalStorageBackend":
        return cls(
            base_dir=settings.local_storage_dir,
            prefix=settings.s3_prefix,
            lock_poll_interval=settings.lock_poll_interval,
            lock_freshness_interval=settings.lock_freshness_interval,
            lock_stale_after=settings.lock_stale_after,
            holder_id=settings.lock_holder_id,
        )

    def __str__(self) -> str:
        return f"Local storage directory: {self.base_dir}, prefix: {self.prefix}"

    def _resolve(self, key: str) -> Path:
        return self.base_dir.joinpath(*self.key_prefix(key).split(SEPARATOR))

    def _logical(self, path: Path) -> str:
        return self.cut_key_prefix(path.relative_to(self.base_dir).as_posix())

    def _transport_error(self, operation: str, path: Path, exc: OSError) -> StorageTransportError:
        logger.error("local_storage.io_failed", operation=operation, path=str(path), error=str(exc))
        return StorageTransportError(operation, str(path), str(exc))

    # --- Opérations sur les données ---

    def store(self, key: str, value: bytes) -> None:
        dest = self._resolve(key)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(value)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, dest)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise self._transport_error("store", dest, exc) from exc
        logger.debug("local_storage.stored", key=key, size=len(value))

    def load(self, key: str) -> bytes:
        path = self._resolve(key)
        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise KeyNotFoundError(key) from exc
        except OSError as exc:
            raise self._transport_error("load", path, exc) from exc

    def delete(self, key: str) -> None:
        path = self._resolve(key)
        try:
            if not is_terminal(normalize_key(key)):
                shutil.rmtree(path, ignore_errors=False)
            else:
                path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise self._transport_error("delete", path, exc) from exc
        logger.debug("local_storage.deleted", key=key)

    def exists(self, key: str) -> bool:
        try:
            return self._resolve(key).exists()
        except (ValueError, OSError) as exc:
            logger.debug("local_storage.exists_failed", key=key, error=str(exc))
            return False

    def list(self, prefix: str, recursive: bool = True) -> list[str]:
        root = self._resolve(prefix)
        if not root.is_dir():
            return []
        try:
            if recursive:
                entries = [p for p in root.rglob("*") if p.is_file()]
            else:
                entries = list(root.iterdir())
        except OSError as exc:
            raise self._transport_error("list", root, exc) from exc

        keys = []
        for entry in entries:
            if entry.name.startswith(".") and entry.name.endswith(".tmp"):
                continue
            key = self._logical(entry)
            if entry.is_dir():
                key += SEPARATOR
            if is_lock_key(key):
                continue
            keys.append(key)
        return keys

    def stat(self, key: str) -> KeyInfo:
        try:
            key = normalize_key(key)
            path = self._resolve(key)
            st = path.stat()
        except (ValueError, OSError) as exc:
            logger.error("local_storage.stat_failed", key=key, error=str(exc))
            return KeyInfo.empty()
        if path.is_dir():
            key = key if not is_terminal(key) else key + SEPARATOR
        return KeyInfo(
            key=key,
            modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            size=0 if path.is_dir() else st.st_size,
            is_terminal=not path.is_dir(),
        )

    # --- Primitives conditionnelles des locks ---

    def _lock_path(self, key: str) -> Path:
        return self._resolve(lock_key(key))

    def _create_lock(self, key: str, record: LockRecord) -> bytes | None:
        # Écriture à côté puis hard link : le lock apparaît complet ou pas du tout.
        path = self._lock_path(key)
        raw = record.to_bytes()
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            with os.fdopen(fd, "wb") as f:
                f.write(raw)
                f.flush()
                os.fsync(f.fileno())
            os.link(tmp, path)
        except FileExistsError:
            return None
        except OSError as exc:
            raise self._transport_error("lock", path, exc) from exc
        finally:
            tmp.unlink(missing_ok=True)
        return raw

    def _read_lock(self, key: str) -> tuple[LockRecord, bytes] | None:
        path = self._lock_path(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise self._transport_error("lock", path, exc) from exc
        return LockRecord.from_bytes(raw), raw

    def _replace_lock(self, key: str, record: LockRecord, version: bytes) -> bytes | None:
        path = self._lock_path(key)
        current = self._read_lock(key)
        if current is None or current[1] != version:
            return None
        if current[0].holder == record.holder:
            # Rafraîchissement par le détenteur : réécriture sur place, le lock ne disparaît jamais.
            raw = record.to_bytes()
            tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
            try:
                tmp.write_bytes(raw)
                os.replace(tmp, path)
            except OSError as exc:
                tmp.unlink(missing_ok=True)
                raise self._transport_error("lock", path, exc) from exc
            return raw
        if not self._take_stale(path, version):
            return None
        return self._create_lock(key, record)

    def _take_stale(self, path: Path, version: bytes) -> bool:
        """Déplace le lock périmé ; un seul concurrent peut gagner le rename."""
        tomb = path.with_name(f".{path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(path, tomb)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise self._transport_error("lock", path, exc) from exc
        try:
            if tomb.read_bytes() == version:
                return True
            # Le lock a changé depuis notre lecture : on le remet en place.
            try:
                os.link(tomb, path)
            except FileExistsError:
                logger.warning("lock.takeover_conflict", path=str(path))
            return False
        finally:
            tomb.unlink(missing_ok=True)

    def _remove_lock(self, key: str, version: bytes) -> bool:
        path = self._lock_path(key)
        current = self._read_lock(key)
        if current is None or current[1] != version:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise self._transport_error("unlock", path, exc) from exc
        return True
