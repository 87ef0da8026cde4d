"""Pytest fixtures: environment isolation and an in-memory S3 client.

These tests must never reach a real object store or read the developer's
S3_* environment.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import pytest
from botocore.exceptions import ClientError

from certstore.config import get_settings
from certstore.storage.factory import get_storage
from certstore.storage.local_backend import LocalStorageBackend
from certstore.storage.s3_backend import S3StorageBackend

FAST_LOCKS = {
    "lock_poll_interval": 0.01,
    "lock_freshness_interval": 0.05,
    "lock_stale_after": 0.5,
}


def client_error(code: str, status: int, operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


@dataclass
class _StoredObject:
    body: bytes
    etag: str
    modified: datetime


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self.closed = False

    def read(self) -> bytes:
        return self._data

    def close(self) -> None:
        self.closed = True


class _FakePaginator:
    def __init__(self, client: "FakeS3Client") -> None:
        self._client = client

    def paginate(self, **kwargs: Any):
        token = None
        while True:
            page = self._client.list_objects_v2(ContinuationToken=token, **kwargs)
            yield page
            token = page.get("NextContinuationToken")
            if not token:
                return


class FakeS3Client:
    """Single-bucket S3 double honouring If-None-Match / If-Match."""

    def __init__(self, page_size: int = 2) -> None:
        self.objects: dict[str, _StoredObject] = {}
        self.page_size = page_size
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._guard = threading.Lock()
        self._etag_counter = 0

    def _enter(self, operation: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((operation, kwargs))
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    def _next_etag(self) -> str:
        self._etag_counter += 1
        return f'"etag-{self._etag_counter}"'

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        self._enter("put_object", kwargs)
        key = kwargs["Key"]
        with self._guard:
            current = self.objects.get(key)
            if kwargs.get("IfNoneMatch") == "*" and current is not None:
                raise client_error("PreconditionFailed", 412, "PutObject")
            if_match = kwargs.get("IfMatch")
            if if_match is not None:
                if current is None:
                    raise client_error("NoSuchKey", 404, "PutObject")
                if current.etag != if_match:
                    raise client_error("PreconditionFailed", 412, "PutObject")
            etag = self._next_etag()
            self.objects[key] = _StoredObject(bytes(kwargs["Body"]), etag, datetime.now(timezone.utc))
        return {"ETag": etag}

    def get_object(self, **kwargs: Any) -> dict[str, Any]:
        self._enter("get_object", kwargs)
        with self._guard:
            obj = self.objects.get(kwargs["Key"])
        if obj is None:
            raise client_error("NoSuchKey", 404, "GetObject")
        return {
            "Body": _FakeBody(obj.body),
            "ETag": obj.etag,
            "ContentLength": len(obj.body),
            "LastModified": obj.modified,
        }

    def head_object(self, **kwargs: Any) -> dict[str, Any]:
        self._enter("head_object", kwargs)
        with self._guard:
            obj = self.objects.get(kwargs["Key"])
        if obj is None:
            raise client_error("404", 404, "HeadObject")
        return {"ETag": obj.etag, "ContentLength": len(obj.body), "LastModified": obj.modified}

    def delete_object(self, **kwargs: Any) -> dict[str, Any]:
        self._enter("delete_object", kwargs)
        key = kwargs["Key"]
        with self._guard:
            current = self.objects.get(key)
            if_match = kwargs.get("IfMatch")
            if if_match is not None and current is not None and current.etag != if_match:
                raise client_error("PreconditionFailed", 412, "DeleteObject")
            self.objects.pop(key, None)
        return {}

    def delete_objects(self, **kwargs: Any) -> dict[str, Any]:
        self._enter("delete_objects", kwargs)
        deleted = []
        with self._guard:
            for item in kwargs["Delete"]["Objects"]:
                self.objects.pop(item["Key"], None)
                deleted.append({"Key": item["Key"]})
        return {"Deleted": deleted}

    def list_objects_v2(self, **kwargs: Any) -> dict[str, Any]:
        self._enter("list_objects_v2", kwargs)
        prefix = kwargs.get("Prefix", "")
        delimiter = kwargs.get("Delimiter")
        max_keys = min(kwargs.get("MaxKeys", self.page_size), self.page_size)
        start = int(kwargs.get("ContinuationToken") or 0)

        with self._guard:
            names = sorted(k for k in self.objects if k.startswith(prefix))
            objects = dict(self.objects)

        entries: list[tuple[str, str]] = []
        seen_prefixes: set[str] = set()
        for name in names:
            rest = name[len(prefix):]
            if delimiter and delimiter in rest:
                common = prefix + rest.split(delimiter, 1)[0] + delimiter
                if common not in seen_prefixes:
                    seen_prefixes.add(common)
                    entries.append(("prefix", common))
                continue
            entries.append(("object", name))

        window = entries[start:start + max_keys]
        page: dict[str, Any] = {"KeyCount": len(window)}
        contents = [
            {"Key": name, "Size": len(objects[name].body), "LastModified": objects[name].modified}
            for kind, name in window
            if kind == "object"
        ]
        common_prefixes = [{"Prefix": name} for kind, name in window if kind == "prefix"]
        if contents:
            page["Contents"] = contents
        if common_prefixes:
            page["CommonPrefixes"] = common_prefixes
        if start + max_keys < len(entries):
            page["NextContinuationToken"] = str(start + max_keys)
        return page

    def get_paginator(self, name: str) -> _FakePaginator:
        assert name == "list_objects_v2"
        return _FakePaginator(self)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop S3_/LOCK_ settings inherited from the shell and reset caches."""
    for name in list(os.environ):
        upper = name.upper()
        if upper.startswith(("S3_", "LOCK_", "LOG_")) or upper in ("USE_S3_STORAGE", "LOCAL_STORAGE_DIR"):
            monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    get_storage.cache_clear()
    yield
    get_settings.cache_clear()
    get_storage.cache_clear()


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def make_s3_storage(fake_s3: FakeS3Client):
    """Build backends sharing one fake bucket, as separate fleet instances would."""

    def _make(**overrides: Any) -> S3StorageBackend:
        options = {"bucket": "certs", "prefix": "caddy", "client": fake_s3, **FAST_LOCKS}
        options.update(overrides)
        return S3StorageBackend(**options)

    return _make


@pytest.fixture
def s3_storage(make_s3_storage) -> S3StorageBackend:
    return make_s3_storage()


@pytest.fixture
def make_local_storage(tmp_path):
    def _make(**overrides: Any) -> LocalStorageBackend:
        options = {"base_dir": tmp_path / "store", "prefix": "caddy", **FAST_LOCKS}
        options.update(overrides)
        return LocalStorageBackend(**options)

    return _make


@pytest.fixture
def local_storage(make_local_storage) -> LocalStorageBackend:
    return make_local_storage()


@pytest.fixture(params=["s3", "local"])
def storage(request: pytest.FixtureRequest):
    """Each backend in turn, for contract tests that hold for both."""
    return request.getfixturevalue(f"{request.param}_storage")


@pytest.fixture(params=["s3", "local"])
def storage_pair(request: pytest.FixtureRequest):
    """Two independent instances of the same backend over the same data."""
    make = request.getfixturevalue(f"make_{request.param}_storage")
    return make(holder_id="instance-a"), make(holder_id="instance-b")
