"""Singleton factory pour le backend de stockage actif."""

from __future__ import annotations

from functools import lru_cache

from certstore.config import Settings, get_settings

from .base import StorageBackend


def create_storage(settings: Settings) -> StorageBackend:
    """
    Construit le backend décrit par ``settings``.

    - USE_S3_STORAGE=true  → S3StorageBackend (AWS S3 / MinIO)
    - USE_S3_STORAGE=false → LocalStorageBackend (filesystem dev)
    """
    if settings.use_s3_storage:
        from .s3_backend import S3StorageBackend

        return S3StorageBackend.from_settings(settings)

    from .local_backend import LocalStorageBackend

    return LocalStorageBackend.from_settings(settings)


@lru_cache(maxsize=1)
def get_storage() -> StorageBackend:
    """
    Retourne le backend du processus.

    La valeur est mise en cache : un seul client boto3 partagé par tous les
    appelants, utilisable en concurrence.
    """
    return create_storage(get_settings())
