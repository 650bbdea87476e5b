from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import default_downloads_dir

LOGGER = logging.getLogger(__name__)

CONSOLE_BASE_URL = "https://s3.console.aws.amazon.com/s3"
PERMANENT_REDIRECT = "PermanentRedirect"
DOWNLOAD_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class BucketInfo:
    name: str
    creation_date: Optional[datetime] = None


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    last_modified: Optional[datetime] = None
    storage_class: Optional[str] = None


@dataclass
class ObjectPage:
    objects: list[ObjectInfo] = field(default_factory=list)
    next_marker: Optional[str] = None


class S3ViewError(Exception):
    """Base class for errors surfaced to the UI."""

    name = "S3ViewError"


class ServiceError(S3ViewError):
    def __init__(self, name: str, message: str) -> None:
        super().__init__(f"{name}: {message}" if message else name)
        self.name = name
        self.message = message


class RegionMismatchError(S3ViewError):
    """The bucket lives in a different region than the active client."""

    name = PERMANENT_REDIRECT

    def __init__(
        self,
        bucket: str,
        endpoint: Optional[str] = None,
        region: Optional[str] = None,
    ) -> None:
        self.bucket = bucket
        self.endpoint = endpoint
        self.region = region
        self.message = f"The bucket '{bucket}' must be addressed using the specified endpoint"
        if endpoint:
            self.message = f"{self.message} ({endpoint})"
        super().__init__(self.message)


class DownloadError(S3ViewError):
    name = "DownloadError"

    def __init__(
        self, bucket: str, key: str, cause: Optional[BaseException] = None
    ) -> None:
        self.bucket = bucket
        self.key = key
        self.cause = cause
        self.message = "Could not download object"
        super().__init__(f"{self.message} s3://{bucket}/{key}")


def classify_error(exc: Exception, bucket: Optional[str] = None) -> S3ViewError:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code") or type(exc).__name__
        if code == PERMANENT_REDIRECT:
            headers = exc.response.get("ResponseMetadata", {}).get("HTTPHeaders", {})
            return RegionMismatchError(
                error.get("Bucket") or bucket or "",
                endpoint=error.get("Endpoint"),
                region=headers.get("x-amz-bucket-region"),
            )
        return ServiceError(code, error.get("Message") or str(exc))
    return ServiceError(type(exc).__name__, str(exc))


def bucket_console_url(bucket: str) -> str:
    return f"{CONSOLE_BASE_URL}/buckets/{quote(bucket)}"


def object_console_url(bucket: str, key: str, region: Optional[str]) -> str:
    return (
        f"{CONSOLE_BASE_URL}/object/{quote(bucket)}"
        f"?region={quote(region or '')}&prefix={quote(key, safe='/')}"
    )


def download_name(key: str) -> str:
    return key.rsplit("/", 1)[-1]


class S3Service:
    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        downloads_dir: Optional[Path] = None,
        session_factory: Optional[Callable[..., object]] = None,
    ) -> None:
        self.profile = self._normalize_profile(profile)
        self._region = region
        self.downloads_dir = downloads_dir or default_downloads_dir()
        self._session_factory = session_factory or boto3.session.Session
        self._clients: dict[tuple[str, Optional[str]], object] = {}
        self._sessions: dict[str, object] = {}
        self._regions: dict[str, Optional[str]] = {}

    def _normalize_profile(self, profile: Optional[str]) -> Optional[str]:
        if not profile or profile == "default":
            return None
        return profile

    def _profile_key(self, profile: Optional[str]) -> str:
        return profile or "__default__"

    def _client_key(self) -> tuple[str, Optional[str]]:
        return self._profile_key(self.profile), self._region

    def _session(self):
        key = self._profile_key(self.profile)
        if key in self._sessions:
            return self._sessions[key]
        if self.profile is None:
            session = self._session_factory()
        else:
            session = self._session_factory(profile_name=self.profile)
        self._sessions[key] = session
        return session

    def _client(self):
        key = self._client_key()
        if key in self._clients:
            return self._clients[key]
        session = self._session()
        region = self._resolve_region()
        if region:
            client = session.client("s3", region_name=region)
        else:
            client = session.client("s3")
        self._clients[key] = client
        return client

    def _resolve_region(self) -> Optional[str]:
        """Explicit region, then the profile's region, then ``AWS_REGION``.

        Building the session reads the AWS config files, so code on the
        event loop goes through :meth:`resolve_region` instead.
        """
        if self._region:
            return self._region
        key = self._profile_key(self.profile)
        if key not in self._regions:
            region = getattr(self._session(), "region_name", None)
            self._regions[key] = region or os.environ.get("AWS_REGION") or None
        return self._regions[key]

    async def resolve_region(self) -> Optional[str]:
        return await asyncio.to_thread(self._resolve_region)

    @property
    def region(self) -> Optional[str]:
        return self._resolve_region()

    @property
    def known_region(self) -> Optional[str]:
        """The region if already resolved, without reading the AWS config."""
        return self._region or self._regions.get(self._profile_key(self.profile))

    @property
    def profile_label(self) -> str:
        return self.profile or "default"

    def available_profiles(self) -> list[Optional[str]]:
        session = self._session_factory()
        normalized: list[Optional[str]] = []
        for profile in session.available_profiles:
            profile = self._normalize_profile(profile)
            if profile not in normalized:
                normalized.append(profile)
        if None not in normalized:
            normalized.insert(0, None)
        return normalized

    def set_profile(self, profile: Optional[str]) -> None:
        self.profile = self._normalize_profile(profile)
        LOGGER.debug("Active profile is now '%s'", self.profile_label)

    async def list_buckets(self) -> list[BucketInfo]:
        return await asyncio.to_thread(self._list_buckets)

    def _list_buckets(self) -> list[BucketInfo]:
        LOGGER.debug("Listing buckets for profile '%s'", self.profile_label)
        client = self._client()
        try:
            response = client.list_buckets()
        except (ClientError, BotoCoreError) as exc:
            LOGGER.exception("Bucket listing failed for profile '%s'", self.profile_label)
            raise classify_error(exc) from exc
        buckets = [
            BucketInfo(name=entry["Name"], creation_date=entry.get("CreationDate"))
            for entry in response.get("Buckets", [])
            if entry.get("Name")
        ]
        LOGGER.debug("Listed %d bucket(s)", len(buckets))
        return buckets

    async def list_all_objects(self, bucket: str) -> list[ObjectInfo]:
        return await asyncio.to_thread(self._list_all_objects, bucket)

    def _list_all_objects(self, bucket: str) -> list[ObjectInfo]:
        client = self._client()
        objects: list[ObjectInfo] = []
        marker: Optional[str] = None
        pages = 0
        while True:
            page = self._list_object_page(client, bucket, marker)
            pages += 1
            objects.extend(page.objects)
            if not page.next_marker:
                break
            marker = page.next_marker
        LOGGER.debug(
            "Listed %d object(s) in %d page(s) for bucket '%s'",
            len(objects),
            pages,
            bucket,
        )
        return objects

    def _list_object_page(
        self, client, bucket: str, marker: Optional[str]
    ) -> ObjectPage:
        kwargs = {"Bucket": bucket}
        if marker:
            kwargs["Marker"] = marker
        try:
            response = client.list_objects(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            error = classify_error(exc, bucket)
            if isinstance(error, RegionMismatchError):
                LOGGER.warning(
                    "Bucket '%s' is outside region '%s' (endpoint %s)",
                    bucket,
                    self.region,
                    error.endpoint,
                )
            else:
                LOGGER.exception("Object listing failed for bucket '%s'", bucket)
            raise error from exc
        page = ObjectPage()
        for entry in response.get("Contents") or []:
            key = entry.get("Key")
            if not key:
                continue
            page.objects.append(
                ObjectInfo(
                    key=key,
                    size=int(entry.get("Size", 0)),
                    last_modified=entry.get("LastModified"),
                    storage_class=entry.get("StorageClass"),
                )
            )
        page.next_marker = response.get("NextMarker")
        # NextMarker is only sent when a delimiter is used
        if not page.next_marker and response.get("IsTruncated") and page.objects:
            page.next_marker = page.objects[-1].key
        return page

    async def download_object(
        self, bucket: str, key: str, directory: Optional[Path] = None
    ) -> Path:
        return await asyncio.to_thread(self._download_object, bucket, key, directory)

    def _download_object(
        self, bucket: str, key: str, directory: Optional[Path] = None
    ) -> Path:
        name = download_name(key)
        if not name:
            raise DownloadError(bucket, key)
        target_dir = Path(directory or self.downloads_dir).expanduser()
        destination = target_dir / name
        LOGGER.debug("Downloading s3://%s/%s to %s", bucket, key, destination)
        client = self._client()
        try:
            response = client.get_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            LOGGER.exception("Download request failed for s3://%s/%s", bucket, key)
            raise DownloadError(bucket, key, exc) from exc
        body = response.get("Body") if isinstance(response, dict) else None
        if body is None or not callable(getattr(body, "read", None)):
            LOGGER.error("Response for s3://%s/%s has no readable body", bucket, key)
            raise DownloadError(bucket, key)
        # an existing file is only replaced once the whole body has arrived
        part_path = destination.with_name(f"{destination.name}.part")
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            with part_path.open("wb") as handle:
                for chunk in iter(lambda: body.read(DOWNLOAD_CHUNK_SIZE), b""):
                    handle.write(chunk)
            part_path.replace(destination)
        except (OSError, BotoCoreError) as exc:
            LOGGER.exception("Could not write s3://%s/%s to %s", bucket, key, destination)
            part_path.unlink(missing_ok=True)
            raise DownloadError(bucket, key, exc) from exc
        finally:
            close = getattr(body, "close", None)
            if callable(close):
                close()
        return destination
