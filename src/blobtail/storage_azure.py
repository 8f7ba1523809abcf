"""Azure Blob Storage container for blobtail readers.

Uses native blob leases. A lease needs an existing blob, so the lock object is
created on first use.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobLeaseClient, BlobServiceClient, ContainerClient

from blobtail.config import BlobTailConfig
from blobtail.errors import BlobNotFoundError, LeaseStuckError, StorageBackendError
from blobtail.storage import BlobInfo, LeaseAttempt, LeaseHandle, LeaseStatus

logger = logging.getLogger(__name__)

_IGNORED_RELEASE_CODES = {
    "LeaseIdMismatchWithLeaseOperation",
    "LeaseNotPresentWithLeaseOperation",
    "LeaseIsBrokenAndCannotBeRenewed",
}


def _error_code(err: Exception) -> str:
    return str(getattr(err, "error_code", "") or "")


class AzureBlobStore:
    """Azure container addressed by storage account name and container name.

    Authenticates with the configured access key when present, otherwise with
    DefaultAzureCredential (environment, managed identity, Azure CLI).
    """

    def __init__(
        self,
        *,
        account: str,
        container: str,
        config: BlobTailConfig,
        container_client: ContainerClient | None = None,
    ) -> None:
        self.account = account
        self.container = container
        self._config = config

        if container_client is not None:
            self._container = container_client
            self._service: BlobServiceClient | None = None
            return

        account_url = f"https://{account}.blob.{config.endpoint}"
        credential: Any = config.storage_access_key or DefaultAzureCredential()
        logger.debug("Connecting to %s container %s", account_url, container)
        self._service = BlobServiceClient(
            account_url=account_url,
            credential=credential,
            user_agent="blobtail",
        )
        self._container = self._service.get_container_client(container)

    def list_blobs(self, page_size: int = 100) -> Iterator[BlobInfo]:
        try:
            pages = self._container.list_blobs(results_per_page=page_size).by_page()
            for page in pages:
                for props in page:
                    yield BlobInfo(path=props.name, etag=props.etag, content_length=int(props.size))
        except AzureError as e:
            raise StorageBackendError("list_blobs", str(e)) from e

    def get_range(
        self, path: str, start: int | None = None, end: int | None = None
    ) -> tuple[BlobInfo, bytes]:
        blob = self._container.get_blob_client(path)
        offset = start or 0
        length = None if end is None else end - offset + 1
        try:
            if start is None and end is None:
                downloader = blob.download_blob()
            else:
                downloader = blob.download_blob(offset=offset, length=length)
            data = downloader.readall()
        except ResourceNotFoundError as e:
            raise BlobNotFoundError(path) from e
        except HttpResponseError as e:
            if _error_code(e) == "InvalidRange" or e.status_code == 416:
                props = blob.get_blob_properties()
                return BlobInfo(path=path, etag=props.etag, content_length=int(props.size)), b""
            raise StorageBackendError("get_range", str(e)) from e
        except AzureError as e:
            raise StorageBackendError("get_range", str(e)) from e

        props = downloader.properties
        return BlobInfo(path=path, etag=props.etag, content_length=int(props.size)), data

    def create_or_replace(self, path: str, data: bytes) -> BlobInfo:
        try:
            resp = self._container.upload_blob(path, data, overwrite=True)
        except AzureError as e:
            raise StorageBackendError("create_or_replace", str(e)) from e
        return BlobInfo(path=path, etag=resp.get("etag"), content_length=len(data))

    def acquire_lease(self, path: str, duration: int) -> LeaseAttempt:
        blob = self._container.get_blob_client(path)
        try:
            if not blob.exists():
                blob.upload_blob(b"", overwrite=False)
        except ResourceExistsError:
            pass
        except HttpResponseError as e:
            # Created concurrently and already leased by its creator.
            if e.status_code not in (409, 412):
                raise StorageBackendError("acquire_lease", str(e)) from e
        except AzureError as e:
            raise StorageBackendError("acquire_lease", str(e)) from e

        lease = BlobLeaseClient(blob)
        try:
            lease.acquire(lease_duration=duration)
        except HttpResponseError as e:
            if _error_code(e) == "LeaseAlreadyPresent":
                return LeaseAttempt(LeaseStatus.ALREADY_PRESENT)
            raise LeaseStuckError(path, str(e)) from e
        except AzureError as e:
            # Timeouts can leave an infinite lease behind on the lock blob.
            raise LeaseStuckError(path, str(e)) from e
        return LeaseAttempt(LeaseStatus.ACQUIRED, LeaseHandle(path=path, lease_id=lease.id))

    def release_lease(self, handle: LeaseHandle) -> None:
        blob = self._container.get_blob_client(handle.path)
        try:
            BlobLeaseClient(blob, lease_id=handle.lease_id).release()
        except ResourceNotFoundError:
            return
        except HttpResponseError as e:
            if _error_code(e) in _IGNORED_RELEASE_CODES:
                return
            raise StorageBackendError("release_lease", str(e)) from e
        except AzureError as e:
            raise StorageBackendError("release_lease", str(e)) from e

    def break_lease(self, path: str) -> None:
        blob = self._container.get_blob_client(path)
        try:
            BlobLeaseClient(blob).break_lease(lease_break_period=0)
        except ResourceNotFoundError:
            return
        except HttpResponseError as e:
            if _error_code(e) == "LeaseNotPresentWithLeaseOperation":
                return
            raise StorageBackendError("break_lease", str(e)) from e
        except AzureError as e:
            raise StorageBackendError("break_lease", str(e)) from e

    def close(self) -> None:
        if self._service is not None:
            self._service.close()
