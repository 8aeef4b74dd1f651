from __future__ import annotations

import asyncio
import enum
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from gallery.core.config import Settings
from gallery.core.logging import get_logger
from gallery.core.storage import (
    ObjectStorage,
    StoredObject,
    UploadOptions,
    is_url,
    remote_id_from_url,
    resource_kind_from_url,
)
from gallery.ingest.errors import StorageDeleteFailure, StorageError, StorageTimeout
from gallery.ingest.models import MediaKind

T = TypeVar("T")


class DeleteStatus(str, enum.Enum):
    deleted = "deleted"
    not_found = "not_found"
    failed = "failed"


@dataclass(slots=True, frozen=True)
class DeleteResult:
    """Outcome of a delete. ``failed`` is a soft failure, never an exception."""

    status: DeleteStatus
    remote_id: Optional[str]
    kind: MediaKind
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not DeleteStatus.failed


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 2
    initial_delay_s: float = 0.5
    backoff_base: float = 2.0
    max_delay_s: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.storage_max_retries,
            initial_delay_s=settings.storage_retry_initial_delay_s,
            backoff_base=settings.storage_retry_backoff_base,
        )

    def delay_for(self, attempt: int) -> float:
        delay = min(self.initial_delay_s * (self.backoff_base ** (attempt - 1)), self.max_delay_s)
        return delay + random.uniform(0, delay * 0.1)


class StorageGateway:
    """Async front for an ObjectStorage provider.

    Every provider call runs on a worker thread and is raced against
    ``storage_call_timeout_s``. A call that misses the deadline is waited out
    before the timeout is reported, so a caller never overlaps it with a retry
    or a cleanup of the file it reads. Transient failures are retried with
    exponential backoff; timed-out uploads are not, since the provider may
    still have stored the object.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        settings: Settings,
        *,
        retry: Optional[RetryPolicy] = None,
    ):
        self.storage = storage
        self.settings = settings
        self.timeout_s = settings.storage_call_timeout_s
        self.retry = retry or RetryPolicy.from_settings(settings)
        self.logger = get_logger(component="storage_gateway")

    def upload_options(self, kind: MediaKind) -> UploadOptions:
        return UploadOptions(
            format=self.settings.upload_image_format if kind is MediaKind.image else None,
            max_dimension=self.settings.upload_max_dimension,
            quality=self.settings.upload_quality,
        )

    async def put(self, local_path: Path, folder: str, *, kind: MediaKind) -> StoredObject:
        """Upload a local file into ``folder`` (relative to the configured root).

        Raises:
            StorageTimeout: the last attempt hit the deadline.
            StorageError: the provider rejected the upload.
        """
        destination = self.settings.remote_folder(folder)
        try:
            stored = await self._call(
                "put",
                self.storage.put,
                Path(local_path),
                destination,
                retry_timeouts=False,
                kind=kind,
                options=self.upload_options(kind),
            )
        except StorageTimeout as exc:
            if isinstance(exc.late_result, StoredObject):
                await self._discard_late_upload(exc.late_result, kind)
            raise
        self.logger.info("storage_put_succeeded", remote_id=stored.remote_id, folder=destination)
        return stored

    async def delete(self, remote_id_or_url: str, *, kind: Optional[MediaKind] = None) -> DeleteResult:
        """Delete by identifier or by a previously issued URL.

        Not-found counts as success. Any failure is logged and returned as a
        ``failed`` result so record removal is never blocked.
        """
        remote_id: Optional[str] = remote_id_or_url
        resolved_kind = kind or MediaKind.image
        try:
            if is_url(remote_id_or_url):
                remote_id = remote_id_from_url(remote_id_or_url)
                resolved_kind = kind or resource_kind_from_url(remote_id_or_url) or MediaKind.image
            if not remote_id:
                raise StorageDeleteFailure("no identifier supplied")
            existed = await self._call("delete", self.storage.delete, remote_id, kind=resolved_kind)
        except (StorageError, ValueError) as exc:
            self.logger.warning(
                "storage_delete_soft_failure",
                remote_id=remote_id,
                target=remote_id_or_url,
                error=str(exc),
            )
            return DeleteResult(DeleteStatus.failed, remote_id, resolved_kind, error=str(exc))

        if not existed:
            self.logger.warning("storage_delete_not_found", remote_id=remote_id)
            return DeleteResult(DeleteStatus.not_found, remote_id, resolved_kind)
        self.logger.info("storage_delete_succeeded", remote_id=remote_id)
        return DeleteResult(DeleteStatus.deleted, remote_id, resolved_kind)

    async def get(self, remote_id: str, *, kind: Optional[MediaKind] = None) -> Optional[StoredObject]:
        resolved_kind = kind or MediaKind.image
        if is_url(remote_id):
            resolved_kind = kind or resource_kind_from_url(remote_id) or MediaKind.image
            remote_id = remote_id_from_url(remote_id)
        return await self._call("get", self.storage.get, remote_id, kind=resolved_kind)

    async def _discard_late_upload(self, stored: StoredObject, kind: MediaKind) -> None:
        # The record for this upload is never written, so the object would be unreachable.
        result = await self.delete(stored.remote_id, kind=kind)
        self.logger.warning(
            "storage_late_upload_discarded",
            remote_id=stored.remote_id,
            status=result.status.value,
        )

    async def _call(
        self,
        operation: str,
        func: Callable[..., T],
        *args: Any,
        retry_timeouts: bool = True,
        **kwargs: Any,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._attempt(operation, func, *args, **kwargs)
            except StorageError as exc:
                if not exc.transient or attempt > self.retry.max_retries:
                    raise
                if isinstance(exc, StorageTimeout) and not retry_timeouts:
                    raise
                delay = self.retry.delay_for(attempt)
                self.logger.warning(
                    "storage_call_retry",
                    operation=operation,
                    attempt=attempt,
                    delay_s=round(delay, 3),
                    error=str(exc),
                )
                await asyncio.sleep(delay)

    async def _attempt(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        worker = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
        done, _ = await asyncio.wait({worker}, timeout=self.timeout_s)
        if not done:
            raise StorageTimeout(operation, self.timeout_s, late_result=await self._settle(operation, worker))
        try:
            return worker.result()
        except StorageError:
            raise
        except (ConnectionError, TimeoutError) as exc:
            raise StorageError(f"storage {operation} failed: {exc}", transient=True) from exc
        except OSError as exc:
            raise StorageError(f"storage {operation} failed: {exc}") from exc

    async def _settle(self, operation: str, worker: asyncio.Future[T]) -> Optional[T]:
        """Wait for a call that missed its deadline and return its late result, if any."""
        self.logger.warning("storage_call_overran", operation=operation, timeout_s=self.timeout_s)
        await asyncio.wait({worker})
        if worker.exception() is not None:
            self.logger.warning("storage_call_failed_late", operation=operation, error=str(worker.exception()))
            return None
        return worker.result()


__all__ = ["StorageGateway", "DeleteResult", "DeleteStatus", "RetryPolicy"]
