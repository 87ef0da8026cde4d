"""Enregistrements de lock et thread de maintien du bail.

Un lock est un petit objet JSON stocké à côté des certificats ::

    {"holder": "web-3-4127-9f2c1a/5d0c...", "created": "...", "updated": "..."}

``updated`` est rafraîchi par le détenteur tant qu'il est vivant. N'importe qui
peut reprendre un lock dont ``updated`` dépasse le seuil de péremption.
"""

from __future__ import annotations

import json
import os
import socket
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_holder_id() -> str:
    """Identité du processus : hôte, pid et suffixe aléatoire."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def new_holder(instance_id: str) -> str:
    """Identifiant de détenteur pour une acquisition.

    Chaque appel a son propre jeton : deux appelants partageant une instance
    de backend ne détiennent jamais le même lock.
    """
    return f"{instance_id}/{uuid.uuid4().hex}"


@dataclass(frozen=True)
class LockRecord:
    holder: str
    created: datetime
    updated: datetime

    @classmethod
    def new(cls, holder: str) -> "LockRecord":
        now = _utcnow()
        return cls(holder=holder, created=now, updated=now)

    def touched(self) -> "LockRecord":
        return replace(self, updated=_utcnow())

    def age(self, now: datetime | None = None) -> float:
        return ((now or _utcnow()) - self.updated).total_seconds()

    def is_stale(self, stale_after: float, now: datetime | None = None) -> bool:
        return self.age(now) > stale_after

    def to_bytes(self) -> bytes:
        payload = {
            "holder": self.holder,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "LockRecord":
        """Parse un lock stocké.

        Un contenu illisible donne un enregistrement déjà expiré : un lock
        corrompu ne bloque jamais l'émission indéfiniment.
        """
        try:
            payload = json.loads(raw.decode("utf-8"))
            return cls(
                holder=str(payload["holder"]),
                created=datetime.fromisoformat(str(payload["created"])),
                updated=datetime.fromisoformat(str(payload["updated"])),
            )
        except (ValueError, KeyError, TypeError, UnicodeDecodeError):
            logger.warning("lock.unreadable_record", size=len(raw))
            return cls(holder="", created=_EPOCH, updated=_EPOCH)


class LockKeeper(threading.Thread):
    """Thread daemon qui appelle ``refresh`` toutes les ``interval`` secondes.

    ``refresh`` retourne False dès que le lock ne nous appartient plus ; le
    thread s'arrête alors de lui-même.
    """

    def __init__(self, key: str, refresh: Callable[[], bool], interval: float) -> None:
        super().__init__(name=f"lock-keeper:{key}", daemon=True)
        self.key = key
        self._refresh = refresh
        self._interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                still_held = self._refresh()
            except Exception as exc:
                # Échec transitoire : le prochain tick peut encore passer avant la péremption.
                logger.warning("lock.refresh_failed", key=self.key, error=str(exc))
                continue
            if not still_held:
                logger.error("lock.lost", key=self.key)
                return

    def stop(self) -> None:
        self._stopped.set()
        if self is not threading.current_thread() and self.is_alive():
            self.join(timeout=self._interval)
