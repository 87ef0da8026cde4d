"""Backend de stockage S3 compatible (AWS S3, MinIO, Ceph RGW)."""

from __future__ import annotations

from typing import Any

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ParamValidationError

from certstore.config import Settings

from .base import KeyInfo, StorageBackend
from .errors import ConditionalWriteUnsupportedError, KeyNotFoundError, StorageTransportError
from .keys import SEPARATOR, is_lock_key, is_terminal, lock_key, normalize_key
from .locking import LockRecord

logger = structlog.get_logger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_CONFLICT_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict", "409"}
_DELETE_BATCH = 1000


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_not_found(exc: ClientError) -> bool:
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return _error_code(exc) in _NOT_FOUND_CODES or status == 404


def _is_conflict(exc: ClientError) -> bool:
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return _error_code(exc) in _CONFLICT_CODES or status in (409, 412)


class S3StorageBackend(StorageBackend):
    """
    Stockage des certificats dans un bucket, sous un préfixe optionnel.

    Fonctionnalités :
    - Signature S3v4 (requis par MinIO)
    - Retry adaptatif géré par botocore, aucun retry dans cette couche
    - Locks par écritures conditionnelles (If-None-Match / If-Match)
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        *,
        endpoint_url: str | None = None,
        access_key: str = "",
        secret_key: str = "",
        region: str = "us-east-1",
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_attempts: int = 3,
        client: Any = None,
        **lock_options: Any,
    ) -> None:
        bucket = (bucket or "").strip()
        if not bucket:
            raise ValueError("S3_BUCKET is required for the S3 storage backend")
        super().__init__(prefix, **lock_options)

        self.bucket = bucket
        self.access_key = access_key
        self.endpoint_url = endpoint_url
        if client is None:
            credentials: dict[str, str] = {}
            if access_key:
                credentials = {"aws_access_key_id": access_key, "aws_secret_access_key": secret_key}
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                region_name=region,
                config=Config(
                    signature_version="s3v4",
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={"max_attempts": max_attempts, "mode": "adaptive"},
                ),
                **credentials,
            )
        self._client = client
        logger.info("s3_backend.initialized", endpoint=endpoint_url, bucket=bucket, prefix=self.prefix)

    @classmethod
    def from_settings(cls, settings: Settings, client: Any = None) -> "S3StorageBackend":
        return cls(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            endpoint_url=settings.s3_endpoint_url,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key.get_secret_value(),
            region=settings.s3_region,
            connect_timeout=settings.s3_connect_timeout,
            read_timeout=settings.s3_read_timeout,
            max_attempts=settings.s3_max_attempts,
            client=client,
            lock_poll_interval=settings.lock_poll_interval,
            lock_freshness_interval=settings.lock_freshness_interval,
            lock_stale_after=settings.lock_stale_after,
            holder_id=settings.lock_holder_id,
        )

    def __str__(self) -> str:
        return f"S3 storage account: {self.access_key}, bucket: {self.bucket}, prefix: {self.prefix}"

    __repr__ = __str__

    def _transport_error(self, operation: str, path: str, exc: Exception) -> StorageTransportError:
        logger.error("s3.request_failed", operation=operation, path=path, error=str(exc))
        return StorageTransportError(operation, path, str(exc))

    # --- Opérations sur les données ---

    def store(self, key: str, value: bytes) -> None:
        path = self.key_prefix(key)
        try:
            self._client.put_object(Bucket=self.bucket, Key=path, Body=value)
        except (ClientError, BotoCoreError) as exc:
            raise self._transport_error("store", path, exc) from exc
        logger.debug("s3.stored", key=path, size=len(value))

    def load(self, key: str) -> bytes:
        path = self.key_prefix(key)
        try:
            resp = self._client.get_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if _is_not_found(exc):
                raise KeyNotFoundError(key) from exc
            raise self._transport_error("load", path, exc) from exc
        except BotoCoreError as exc:
            raise self._transport_error("load", path, exc) from exc

        body = resp["Body"]
        try:
            data = body.read()
        except BotoCoreError as exc:
            raise self._transport_error("load", path, exc) from exc
        finally:
            body.close()
        logger.debug("s3.loaded", key=path, size=len(data))
        return data

    def delete(self, key: str) -> None:
        if not is_terminal(normalize_key(key)):
            self._delete_tree(key)
            return
        path = self.key_prefix(key)
        try:
            self._client.delete_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if _is_not_found(exc):
                return
            raise self._transport_error("delete", path, exc) from exc
        except BotoCoreError as exc:
            raise self._transport_error("delete", path, exc) from exc
        logger.debug("s3.deleted", key=path)

    def _delete_tree(self, key: str) -> None:
        directory = self.keys.directory(key)
        paths = [self.key_prefix(k) for k in self.list(key, recursive=True)]
        try:
            for start in range(0, len(paths), _DELETE_BATCH):
                batch = paths[start:start + _DELETE_BATCH]
                resp = self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": p} for p in batch], "Quiet": True},
                )
                for failure in resp.get("Errors", []):
                    logger.warning("s3.delete_tree_partial", key=failure.get("Key"), error=failure.get("Message"))
        except (ClientError, BotoCoreError) as exc:
            raise self._transport_error("delete", directory, exc) from exc
        logger.debug("s3.deleted_tree", prefix=directory, count=len(paths))

    def exists(self, key: str) -> bool:
        path = key
        try:
            path = self.key_prefix(key)
            if path and is_terminal(path):
                try:
                    self._client.head_object(Bucket=self.bucket, Key=path)
                    return True
                except ClientError as exc:
                    if not _is_not_found(exc):
                        raise
            return self._has_children(key)
        except (ClientError, BotoCoreError, ValueError) as exc:
            logger.debug("s3.exists_failed", key=path, error=str(exc))
            return False

    def _has_children(self, key: str) -> bool:
        resp = self._client.list_objects_v2(Bucket=self.bucket, Prefix=self.keys.directory(key), MaxKeys=1)
        return bool(resp.get("Contents"))

    def list(self, prefix: str, recursive: bool = True) -> list[str]:
        directory = self.keys.directory(prefix)
        params: dict[str, Any] = {"Bucket": self.bucket, "Prefix": directory}
        if not recursive:
            params["Delimiter"] = SEPARATOR

        keys: list[str] = []
        try:
            for page in self._client.get_paginator("list_objects_v2").paginate(**params):
                for obj in page.get("Contents", []):
                    keys.append(self.cut_key_prefix(obj["Key"]))
                for sub in page.get("CommonPrefixes", []):
                    keys.append(self.cut_key_prefix(sub["Prefix"]))
        except (ClientError, BotoCoreError) as exc:
            raise self._transport_error("list", directory, exc) from exc

        keys = [k for k in keys if k and not is_lock_key(k)]
        logger.debug("s3.listed", prefix=directory, recursive=recursive, count=len(keys))
        return keys

    def stat(self, key: str) -> KeyInfo:
        path = key
        try:
            key = normalize_key(key)
            path = self.key_prefix(key)
            if not is_terminal(key):
                if self._has_children(key):
                    return KeyInfo(key=key, modified=None, size=0, is_terminal=False)
                logger.error("s3.stat_failed", key=path, error="no such directory")
                return KeyInfo.empty()
            props = self._client.head_object(Bucket=self.bucket, Key=path)
        except (ClientError, BotoCoreError, ValueError) as exc:
            logger.error("s3.stat_failed", key=path, error=str(exc))
            return KeyInfo.empty()

        logger.debug("s3.stat", key=path, size=props.get("ContentLength"))
        return KeyInfo(
            key=key,
            modified=props.get("LastModified"),
            size=int(props.get("ContentLength") or 0),
            is_terminal=True,
        )

    # --- Primitives conditionnelles des locks ---

    def _put_conditional(self, path: str, record: LockRecord, **condition: str) -> str | None:
        try:
            resp = self._client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=record.to_bytes(),
                ContentType="application/json",
                **condition,
            )
        except ParamValidationError as exc:
            raise ConditionalWriteUnsupportedError(
                f"S3 endpoint does not accept conditional writes ({', '.join(condition)})"
            ) from exc
        except ClientError as exc:
            if _is_conflict(exc) or _is_not_found(exc):
                return None
            raise self._transport_error("lock", path, exc) from exc
        except BotoCoreError as exc:
            raise self._transport_error("lock", path, exc) from exc
        return str(resp.get("ETag", ""))

    def _create_lock(self, key: str, record: LockRecord) -> str | None:
        return self._put_conditional(self.key_prefix(lock_key(key)), record, IfNoneMatch="*")

    def _read_lock(self, key: str) -> tuple[LockRecord, str] | None:
        path = self.key_prefix(lock_key(key))
        try:
            resp = self._client.get_object(Bucket=self.bucket, Key=path)
            body = resp["Body"]
            try:
                raw = body.read()
            finally:
                body.close()
        except ClientError as exc:
            if _is_not_found(exc):
                return None
            raise self._transport_error("lock", path, exc) from exc
        except BotoCoreError as exc:
            raise self._transport_error("lock", path, exc) from exc
        return LockRecord.from_bytes(raw), str(resp.get("ETag", ""))

    def _replace_lock(self, key: str, record: LockRecord, version: str) -> str | None:
        return self._put_conditional(self.key_prefix(lock_key(key)), record, IfMatch=version)

    def _remove_lock(self, key: str, version: str) -> bool:
        path = self.key_prefix(lock_key(key))
        try:
            self._client.delete_object(Bucket=self.bucket, Key=path, IfMatch=version)
            return True
        except ParamValidationError:
            # Pas de delete conditionnel sur ce stack : on revérifie la version puis on supprime.
            current = self._read_lock(key)
            if current is None:
                return False
            if current[1] != version:
                return False
            try:
                self._client.delete_object(Bucket=self.bucket, Key=path)
            except (ClientError, BotoCoreError) as exc:
                raise self._transport_error("unlock", path, exc) from exc
            return True
        except ClientError as exc:
            if _is_conflict(exc) or _is_not_found(exc):
                return False
            raise self._transport_error("unlock", path, exc) from exc
        except BotoCoreError as exc:
            raise self._transport_error("unlock", path, exc) from exc
