"""Interface abstraite des backends de stockage utilisés par le gestionnaire de certificats."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator

import structlog

from .errors import LockCancelledError, LockTimeoutError
from .keys import KeyMapper
from .locking import LockKeeper, LockRecord, default_holder_id, new_holder

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class KeyInfo:
    """Instantané d'une clé stockée.

    ``is_terminal`` vaut False pour les répertoires virtuels (clés terminées par ``/``).
    """

    key: str
    modified: datetime | None
    size: int
    is_terminal: bool

    @classmethod
    def empty(cls) -> "KeyInfo":
        return cls(key="", modified=None, size=0, is_terminal=False)


@dataclass
class _Lease:
    record: LockRecord
    version: Any
    owner: int = field(default_factory=threading.get_ident)
    lost: threading.Event = field(default_factory=threading.Event)
    keeper: LockKeeper | None = None


class StorageBackend(ABC):
    """Interface commune pour le stockage S3 (prod) et local (dev).

    Les sous-classes implémentent les opérations sur les données et quatre
    primitives conditionnelles ; le protocole de lock bloquant vit ici.
    """

    def __init__(
        self,
        prefix: str = "",
        *,
        lock_poll_interval: float = 1.0,
        lock_freshness_interval: float = 5.0,
        lock_stale_after: float = 10.0,
        holder_id: str | None = None,
    ) -> None:
        if lock_stale_after <= lock_freshness_interval:
            raise ValueError("lock_stale_after must be greater than lock_freshness_interval")
        self.keys = KeyMapper(prefix)
        self.lock_poll_interval = lock_poll_interval
        self.lock_freshness_interval = lock_freshness_interval
        self.lock_stale_after = lock_stale_after
        self.holder_id = holder_id or default_holder_id()
        self._leases: dict[str, _Lease] = {}
        self._leases_guard = threading.Lock()

    @property
    def prefix(self) -> str:
        return self.keys.prefix

    def key_prefix(self, key: str) -> str:
        return self.keys.key_prefix(key)

    def cut_key_prefix(self, path: str) -> str:
        return self.keys.cut_key_prefix(path)

    # --- Opérations sur les données ---

    @abstractmethod
    def store(self, key: str, value: bytes) -> None:
        """Écrire ``value`` à ``key`` en remplaçant atomiquement l'objet existant."""

    @abstractmethod
    def load(self, key: str) -> bytes:
        """Retourne le contenu complet de ``key``. Lève `KeyNotFoundError` si absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Supprimer ``key``. Supprimer une clé absente réussit.

        Une clé terminée par ``/`` supprime tout le répertoire virtuel.
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Vrai si un objet ou un répertoire virtuel existe à ``key``.

        Ne lève jamais : une vérification en échec vaut False.
        """

    @abstractmethod
    def list(self, prefix: str, recursive: bool = True) -> list[str]:
        """Clés logiques sous ``prefix``, locks exclus.

        En non récursif, seuls les enfants directs sont retournés, les
        répertoires virtuels avec un ``/`` final.
        """

    @abstractmethod
    def stat(self, key: str) -> KeyInfo:
        """Métadonnées de ``key`` ; `KeyInfo.empty()` si illisibles."""

    # --- Primitives conditionnelles des locks ---

    @abstractmethod
    def _create_lock(self, key: str, record: LockRecord) -> Any | None:
        """Créer le lock seulement s'il est absent. Retourne sa version, ou None s'il existe."""

    @abstractmethod
    def _read_lock(self, key: str) -> tuple[LockRecord, Any] | None:
        """Enregistrement et version du lock courant, ou None s'il n'y en a pas."""

    @abstractmethod
    def _replace_lock(self, key: str, record: LockRecord, version: Any) -> Any | None:
        """Écraser le lock seulement s'il est encore à ``version``. Retourne la nouvelle version ou None."""

    @abstractmethod
    def _remove_lock(self, key: str, version: Any) -> bool:
        """Supprimer le lock seulement s'il est encore à ``version``. Retourne True si supprimé."""

    # --- Protocole de lock ---

    def lock(
        self,
        key: str,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        """Bloque jusqu'à ce que l'appelant détienne le lock de ``key`` en exclusivité.

        Lève `LockTimeoutError` après ``timeout`` secondes et
        `LockCancelledError` quand ``cancel`` est positionné. Un lock non
        rafraîchi depuis ``lock_stale_after`` secondes est repris.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        waiter = cancel or threading.Event()
        holder = new_holder(self.holder_id)
        attempts = 0

        while True:
            if waiter.is_set():
                raise LockCancelledError(key)
            attempts += 1

            record = LockRecord.new(holder)
            version = self._create_lock(key, record)
            if version is not None:
                self._hold(key, record, version, attempts)
                return

            current = self._read_lock(key)
            if current is None:
                # Libéré entre la création et la lecture : on réessaie tout de suite.
                continue
            existing, existing_version = current
            if existing.is_stale(self.lock_stale_after):
                logger.warning(
                    "lock.stale_takeover",
                    key=key,
                    previous_holder=existing.holder,
                    age_seconds=round(existing.age(), 1),
                )
                version = self._replace_lock(key, record, existing_version)
                if version is not None:
                    self._hold(key, record, version, attempts)
                    return

            wait = self.lock_poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise LockTimeoutError(key, timeout or 0.0)
                wait = min(wait, remaining)
            if attempts == 1:
                logger.info("lock.waiting", key=key, holder=existing.holder)
            if waiter.wait(wait):
                raise LockCancelledError(key)

    def unlock(self, key: str) -> None:
        """Libère ``key`` si le thread appelant le détient ou si le lock est périmé.

        Libérer une clé non verrouillée, ou détenue par un autre appelant, ne
        fait rien.
        """
        with self._leases_guard:
            lease = self._leases.get(key)
            if lease is not None and lease.owner != threading.get_ident():
                foreign = lease
                lease = None
            else:
                foreign = None
                self._leases.pop(key, None)
        if foreign is not None:
            # Détenu par un autre thread du processus : lui seul peut le libérer.
            logger.warning("lock.unlock_not_owner", key=key, holder=foreign.record.holder)
            return
        if lease is not None and lease.keeper is not None:
            lease.keeper.stop()

        current = self._read_lock(key)
        if current is None:
            logger.debug("lock.unlock_noop", key=key)
            return
        existing, version = current
        owned = lease is not None and existing.holder == lease.record.holder
        if not owned and not existing.is_stale(self.lock_stale_after):
            logger.warning("lock.unlock_not_owner", key=key, holder=existing.holder)
            return
        if self._remove_lock(key, version):
            logger.info("lock.released", key=key, stale=not owned)
        else:
            logger.warning("lock.release_conflict", key=key)

    @contextmanager
    def locked(
        self,
        key: str,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[threading.Event]:
        """``with storage.locked("issue_cert_example.com") as lost: ...``

        ``lost`` est positionné dès que le lock ne peut plus être rafraîchi
        (repris ou supprimé dans notre dos) ; une section critique longue doit
        le vérifier.
        """
        self.lock(key, timeout=timeout, cancel=cancel)
        with self._leases_guard:
            lease = self._leases.get(key)
        try:
            yield lease.lost if lease is not None else threading.Event()
        finally:
            self.unlock(key)

    def _hold(self, key: str, record: LockRecord, version: Any, attempts: int) -> None:
        lease = _Lease(record=record, version=version)
        lease.keeper = LockKeeper(key, lambda: self._refresh(key, lease), self.lock_freshness_interval)
        with self._leases_guard:
            previous = self._leases.get(key)
            self._leases[key] = lease
        if previous is not None:
            previous.lost.set()
            if previous.keeper is not None:
                previous.keeper.stop()
        lease.keeper.start()
        logger.info("lock.acquired", key=key, holder=record.holder, attempts=attempts)

    def _refresh(self, key: str, lease: _Lease) -> bool:
        record = lease.record.touched()
        version = self._replace_lock(key, record, lease.version)
        if version is None:
            lease.lost.set()
            with self._leases_guard:
                if self._leases.get(key) is lease:
                    del self._leases[key]
            return False
        lease.record = record
        lease.version = version
        logger.debug("lock.refreshed", key=key)
        return True
