"""Async object storage used for submission payloads."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Protocol

import aioboto3
from botocore.config import Config  # type: ignore[import-untyped]
from botocore.exceptions import BotoCoreError, ClientError  # type: ignore[import-untyped]

from intake_common.errors import NotFoundError, PersistenceError

MISSING_KEY_CODES = frozenset({"NoSuchKey", "404"})


class ObjectStore(Protocol):
    """Container-scoped object store used by the submission pipeline."""

    async def put_object(
        self, container: str, name: str, data: bytes, content_type: str = "application/json"
    ) -> None: ...

    async def get_object(self, container: str, name: str) -> bytes: ...

    async def list_objects(self, container: str) -> list[str]: ...

    async def delete_object(self, container: str, name: str) -> None: ...


@dataclass(slots=True)
class ObjectStorageConfig:
    bucket: str
    access_key: str
    secret_key: str
    region: str = "us-east-1"
    endpoint_url: str | None = None
    secure: bool = True
    path_style_access: bool = True

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ObjectStorageConfig:
        defaults = {"bucket": "intake-dev", "access_key": "localdev", "secret_key": "localdev"}
        values = {**defaults, **{k: v for k, v in raw.items() if k in cls.__dataclass_fields__}}
        values["secure"] = bool(values.get("secure", True))
        values["path_style_access"] = bool(values.get("path_style_access", True))
        return cls(**values)


def object_key(container: str, name: str) -> str:
    return f"{container.strip('/')}/{name}"


class ObjectStorageClient:
    """aioboto3 implementation of ``ObjectStore``.

    Each organization container maps onto a key prefix in one bucket. Storage
    failures surface as ``PersistenceError``; a missing key on read is a
    ``NotFoundError``.
    """

    def __init__(self, config: ObjectStorageConfig) -> None:
        self._config = config
        self._session = aioboto3.Session()

    @property
    def bucket(self) -> str:
        return self._config.bucket

    def _client_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "aws_access_key_id": self._config.access_key,
            "aws_secret_access_key": self._config.secret_key,
            "region_name": self._config.region,
            "use_ssl": self._config.secure,
        }
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        if self._config.path_style_access:
            kwargs["config"] = Config(signature_version="s3v4", s3={"addressing_style": "path"})
        return kwargs

    @asynccontextmanager
    async def _s3(self, action: str, key: str) -> AsyncIterator[Any]:
        try:
            async with self._session.client("s3", **self._client_kwargs()) as client:
                yield client
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in MISSING_KEY_CODES:
                raise NotFoundError(f"Object {key} not found") from exc
            raise PersistenceError(f"Failed to {action} object {key}", {"error": str(exc)}) from exc
        except BotoCoreError as exc:
            raise PersistenceError(f"Failed to {action} object {key}", {"error": str(exc)}) from exc

    async def put_object(
        self, container: str, name: str, data: bytes, content_type: str = "application/json"
    ) -> None:
        key = object_key(container, name)
        async with self._s3("store", key) as s3:
            await s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

    async def get_object(self, container: str, name: str) -> bytes:
        key = object_key(container, name)
        async with self._s3("read", key) as s3:
            response = await s3.get_object(Bucket=self.bucket, Key=key)
            async with response["Body"] as stream:
                return bytes(await stream.read() or b"")

    async def list_objects(self, container: str) -> list[str]:
        prefix = object_key(container, "")
        names: list[str] = []
        async with self._s3("list", prefix) as s3:
            async for page in s3.get_paginator("list_objects_v2").paginate(Bucket=self.bucket, Prefix=prefix):
                names.extend(item["Key"][len(prefix):] for item in page.get("Contents", []))
        return names

    async def delete_object(self, container: str, name: str) -> None:
        key = object_key(container, name)
        async with self._s3("delete", key) as s3:
            await s3.delete_object(Bucket=self.bucket, Key=key)
