"""S3 blob store with leases emulated by a conditionally-written lock document."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ParamValidationError

from blobtail.config import INFINITE_LEASE, BlobTailConfig
from blobtail.errors import BlobNotFoundError, LeaseStuckError, StorageBackendError
from blobtail.storage import BlobInfo, LeaseAttempt, LeaseHandle, LeaseStatus

logger = logging.getLogger(__name__)


class _PreconditionFailed(Exception):
    pass


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _total_length(content_range: str | None, fallback: int) -> int:
    # "bytes 0-99/1234" -> 1234
    if not content_range or "/" not in content_range:
        return fallback
    total = content_range.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else fallback


class S3BlobStore:
    """S3-backed container for blobtail readers."""

    def __init__(self, *, bucket: str, prefix: str, config: BlobTailConfig) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._config = config

        self._session = boto3.Session(region_name=config.s3_region)
        self._s3 = self._session.client(
            "s3",
            region_name=config.s3_region,
            endpoint_url=config.s3_endpoint_url,
            config=BotoConfig(
                connect_timeout=config.s3_request_timeout_s,
                read_timeout=config.s3_request_timeout_s,
                retries={"max_attempts": 5, "mode": "standard"},
            ),
        )

    # --- Key/object helpers ---

    def _k(self, rel_path: str) -> str:
        return f"{self.prefix}/{rel_path}" if self.prefix else rel_path

    def _rel(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix + "/"):
            return key[len(self.prefix) + 1 :]
        return key

    def _error_code(self, err: Exception) -> str:
        if isinstance(err, ClientError):
            return str(err.response.get("Error", {}).get("Code", ""))
        return ""

    def _is_not_found(self, err: Exception) -> bool:
        return self._error_code(err) in {"NoSuchKey", "404", "NotFound"}

    def _is_precondition_failed(self, err: Exception) -> bool:
        return self._error_code(err) in {"PreconditionFailed", "412"}

    def _put_json(
        self,
        *,
        key: str,
        obj: dict[str, Any],
        if_none_match: str | None = None,
        if_match: str | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8"),
            "ContentType": "application/json",
        }
        if if_none_match is not None:
            kwargs["IfNoneMatch"] = if_none_match
        if if_match is not None:
            kwargs["IfMatch"] = if_match

        try:
            resp = self._s3.put_object(**kwargs)
            etag = resp.get("ETag")
            return etag if isinstance(etag, str) else ""
        except ParamValidationError as e:
            raise StorageBackendError(
                "s3_conditional_write",
                "S3 endpoint does not support If-Match/If-None-Match for PUT",
            ) from e
        except ClientError as e:
            if self._is_precondition_failed(e):
                raise _PreconditionFailed() from e
            raise StorageBackendError("put_object", str(e)) from e
        except BotoCoreError as e:
            raise StorageBackendError("put_object", str(e)) from e

    def _get_json(self, key: str) -> tuple[dict[str, Any] | None, str | None]:
        try:
            resp = self._s3.get_object(Bucket=self.bucket, Key=key)
            body = resp["Body"].read().decode("utf-8")
            etag = resp.get("ETag")
        except ClientError as e:
            if self._is_not_found(e):
                return None, None
            raise StorageBackendError("get_object", str(e)) from e
        except BotoCoreError as e:
            raise StorageBackendError("get_object", str(e)) from e
        try:
            obj = json.loads(body)
        except ValueError:
            obj = None
        if not isinstance(obj, dict):
            # Present but not a lease document.
            return {}, etag if isinstance(etag, str) else None
        return obj, etag if isinstance(etag, str) else None

    # --- BlobStore ---

    def list_blobs(self, page_size: int = 100) -> Iterator[BlobInfo]:
        paginator = self._s3.get_paginator("list_objects_v2")
        list_prefix = f"{self.prefix}/" if self.prefix else ""
        try:
            for page in paginator.paginate(
                Bucket=self.bucket,
                Prefix=list_prefix,
                PaginationConfig={"PageSize": page_size},
            ):
                for item in page.get("Contents", []):
                    key = item.get("Key")
                    if not isinstance(key, str):
                        continue
                    yield BlobInfo(
                        path=self._rel(key),
                        etag=item.get("ETag"),
                        content_length=int(item.get("Size", 0)),
                    )
        except (ClientError, BotoCoreError) as e:
            raise StorageBackendError("list_blobs", str(e)) from e

    def _head(self, path: str) -> BlobInfo:
        try:
            resp = self._s3.head_object(Bucket=self.bucket, Key=self._k(path))
        except ClientError as e:
            if self._is_not_found(e):
                raise BlobNotFoundError(path) from e
            raise StorageBackendError("head_object", str(e)) from e
        except BotoCoreError as e:
            raise StorageBackendError("head_object", str(e)) from e
        return BlobInfo(path=path, etag=resp.get("ETag"), content_length=int(resp.get("ContentLength", 0)))

    def get_range(
        self, path: str, start: int | None = None, end: int | None = None
    ) -> tuple[BlobInfo, bytes]:
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "Key": self._k(path)}
        if start is not None or end is not None:
            lo = start or 0
            kwargs["Range"] = f"bytes={lo}-{'' if end is None else end}"
        try:
            resp = self._s3.get_object(**kwargs)
            body = resp["Body"].read()
        except ClientError as e:
            if self._is_not_found(e):
                raise BlobNotFoundError(path) from e
            if self._error_code(e) in {"InvalidRange", "416"}:
                return self._head(path), b""
            raise StorageBackendError("get_range", str(e)) from e
        except BotoCoreError as e:
            raise StorageBackendError("get_range", str(e)) from e

        total = _total_length(resp.get("ContentRange"), int(resp.get("ContentLength", len(body))))
        return BlobInfo(path=path, etag=resp.get("ETag"), content_length=total), body

    def create_or_replace(self, path: str, data: bytes) -> BlobInfo:
        try:
            resp = self._s3.put_object(Bucket=self.bucket, Key=self._k(path), Body=data)
        except (ClientError, BotoCoreError) as e:
            raise StorageBackendError("create_or_replace", str(e)) from e
        return BlobInfo(path=path, etag=resp.get("ETag"), content_length=len(data))

    def acquire_lease(self, path: str, duration: int) -> LeaseAttempt:
        key = self._k(path)
        now = datetime.now(timezone.utc)
        lease_id = str(uuid.uuid4())
        payload = {
            "lease_id": lease_id,
            "acquired_at": now.isoformat(),
            "expires_at": None
            if duration == INFINITE_LEASE
            else (now + timedelta(seconds=duration)).isoformat(),
        }
        handle = LeaseHandle(path=path, lease_id=lease_id)

        try:
            self._put_json(key=key, obj=payload, if_none_match="*")
            return LeaseAttempt(LeaseStatus.ACQUIRED, handle)
        except _PreconditionFailed:
            pass

        # Existing lock: inspect and take over if expired.
        lock_obj, etag = self._get_json(key)
        if lock_obj is None:
            # Released between our write and read; let the caller retry.
            return LeaseAttempt(LeaseStatus.ALREADY_PRESENT)
        if "lease_id" not in lock_obj or etag is None:
            raise LeaseStuckError(path, "lock object is not a lease document")

        raw_expiry = lock_obj.get("expires_at")
        if raw_expiry is None:
            return LeaseAttempt(LeaseStatus.ALREADY_PRESENT)
        try:
            expires_at = _parse_iso(str(raw_expiry))
        except ValueError as e:
            raise LeaseStuckError(path, f"unparseable expiry '{raw_expiry}'") from e

        if datetime.now(timezone.utc) < expires_at:
            return LeaseAttempt(LeaseStatus.ALREADY_PRESENT)
        try:
            self._put_json(key=key, obj=payload, if_match=etag)
        except _PreconditionFailed:
            return LeaseAttempt(LeaseStatus.ALREADY_PRESENT)
        logger.debug("Took over expired lease on %s", path)
        return LeaseAttempt(LeaseStatus.ACQUIRED, handle)

    def release_lease(self, handle: LeaseHandle) -> None:
        key = self._k(handle.path)
        lock_obj, etag = self._get_json(key)
        if lock_obj is None or etag is None or lock_obj.get("lease_id") != handle.lease_id:
            return
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=key, IfMatch=etag)
        except ParamValidationError:
            # Fallback for stacks without conditional delete support.
            refreshed, _ = self._get_json(key)
            if refreshed is not None and refreshed.get("lease_id") == handle.lease_id:
                self.break_lease(handle.path)
        except ClientError as e:
            if self._is_precondition_failed(e) or self._is_not_found(e):
                return
            raise StorageBackendError("release_lease", str(e)) from e
        except BotoCoreError as e:
            raise StorageBackendError("release_lease", str(e)) from e

    def break_lease(self, path: str) -> None:
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=self._k(path))
        except (ClientError, BotoCoreError) as e:
            raise StorageBackendError("break_lease", str(e)) from e

    def close(self) -> None:
        self._s3.close()
