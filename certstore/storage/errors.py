"""Exceptions levées par les backends de stockage."""

from __future__ import annotations


class StorageError(Exception):
    """Classe de base de toutes les erreurs levées par un backend."""


class KeyNotFoundError(StorageError, FileNotFoundError):
    """Aucun objet au chemin résolu.

    L'appelant l'interprète comme « rien de stocké pour l'instant », pas comme un échec.
    """

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"key not found: {self.key}"


class StorageTransportError(StorageError):
    """Le stockage distant (ou le filesystem local) a échoué.

    L'exception d'origine est chaînée dans ``__cause__``.
    """

    def __init__(self, operation: str, path: str, message: str) -> None:
        super().__init__(f"{operation} {path!r} failed: {message}")
        self.operation = operation
        self.path = path


class ConditionalWriteUnsupportedError(StorageError):
    """L'endpoint refuse les écritures conditionnelles.

    Sans elles, deux processus pourraient se croire détenteurs du même lock.
    """


class LockTimeoutError(StorageError, TimeoutError):
    """Délai écoulé avant d'obtenir le lock en exclusivité."""

    def __init__(self, key: str, timeout: float) -> None:
        super().__init__(f"timed out after {timeout:.1f}s waiting for lock {key!r}")
        self.key = key
        self.timeout = timeout


class LockCancelledError(StorageError):
    """L'appelant a annulé la tentative de lock."""

    def __init__(self, key: str) -> None:
        super().__init__(f"lock attempt for {key!r} was cancelled")
        self.key = key
