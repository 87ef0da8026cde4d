"""Correspondance entre clés logiques de certificats et chemins du backend.

Les clés logiques sont des chemins virtuels séparés par des slashs, par exemple
``certificates/acme-v02/example.com/example.com.crt``. Le chemin côté backend
est la clé logique placée sous le préfixe configuré ; une clé terminée par le
séparateur désigne un répertoire virtuel.
"""

from __future__ import annotations

import structlog

logger = structlog.get_logger(__name__)

SEPARATOR = "/"
LOCKS_DIR = "locks"
LOCK_SUFFIX = ".lock"


def normalize_key(key: str) -> str:
    """Fusionne les séparateurs doublés et retire celui de tête.

    Le séparateur final est conservé : il marque un répertoire virtuel.
    """
    segments = [s for s in key.split(SEPARATOR) if s]
    for segment in segments:
        if segment in (".", ".."):
            raise ValueError(f"relative path segment {segment!r} not allowed in key {key!r}")
    joined = SEPARATOR.join(segments)
    if joined and key.endswith(SEPARATOR):
        joined += SEPARATOR
    return joined


def lock_key(key: str) -> str:
    """Clé logique de l'objet lock qui protège ``key``."""
    return f"{LOCKS_DIR}{SEPARATOR}{normalize_key(key).rstrip(SEPARATOR)}{LOCK_SUFFIX}"


def is_lock_key(key: str) -> bool:
    """Vrai pour tout ce qui est sous l'espace réservé ``locks/``, répertoire compris."""
    return key.startswith(LOCKS_DIR + SEPARATOR)


def is_terminal(key: str) -> bool:
    return not key.endswith(SEPARATOR)


class KeyMapper:
    """Préfixe les clés logiques d'un backend et retire le préfixe au retour."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = normalize_key(prefix.strip()).strip(SEPARATOR)

    def key_prefix(self, key: str) -> str:
        key = normalize_key(key)
        if not self.prefix:
            return key
        if not key:
            return self.prefix
        return f"{self.prefix}{SEPARATOR}{key}"

    def cut_key_prefix(self, path: str) -> str:
        if not self.prefix:
            return path
        if path == self.prefix:
            return ""
        root = self.prefix + SEPARATOR
        if path.startswith(root):
            return path[len(root):]
        logger.warning("storage.path_outside_prefix", path=path, prefix=self.prefix)
        return path

    def directory(self, key: str) -> str:
        """Chemin backend de ``key`` vu comme répertoire (toujours terminé par ``/``)."""
        path = self.key_prefix(key).rstrip(SEPARATOR)
        return path + SEPARATOR if path else ""
