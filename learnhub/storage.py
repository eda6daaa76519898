"""
Object store client.

Uploads and deletes blobs on a Cloudinary-compatible REST API.
Deletion is signed with the API secret and is what the upload saga
uses for compensation.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from .config import StorageSettings, storage_settings
from .errors import (
    ConfigurationError,
    ExternalServiceError,
    RateLimitError,
    TransientIOError,
)
from .logging_config import logger
from .retry import RetryPolicy, Sleep, with_retry

IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp", "image/svg+xml"}
VIDEO_TYPES = {"video/mp4", "video/webm", "video/quicktime"}


@dataclass(frozen=True)
class BlobFile:
    """An in-memory file handed to the upload saga."""

    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StoredBlob:
    """A blob accepted by the object store."""

    url: str
    public_id: str
    resource_type: str
    format: str | None = None
    bytes: int | None = None


def detect_resource_type(content_type: str) -> str:
    """Map a MIME type to the store's resource type. PDFs are stored as ``raw``."""
    if content_type in IMAGE_TYPES:
        return "image"
    if content_type in VIDEO_TYPES:
        return "video"
    return "raw"


def public_id_from_url(url: str) -> str | None:
    """
    Extract the public id from a delivery URL.

    Format: https://res.cloudinary.com/<cloud>/<type>/upload/v<version>/<public_id>.<ext>
    Raw resources keep their extension as part of the public id.
    """
    parts = urlparse(url).path.strip("/").split("/")
    if "upload" not in parts:
        return None

    rest = parts[parts.index("upload") + 1 :]
    if rest and rest[0].startswith("v") and rest[0][1:].isdigit():
        rest = rest[1:]
    if not rest:
        return None

    public_id = "/".join(rest)
    if resource_type_from_url(url) != "raw" and "." in rest[-1]:
        public_id = public_id.rsplit(".", 1)[0]
    return public_id


def resource_type_from_url(url: str) -> str:
    path = urlparse(url).path
    if "/image/" in path:
        return "image"
    if "/video/" in path:
        return "video"
    return "raw"


def sign_params(params: dict[str, str], api_secret: str) -> str:
    """SHA-1 signature over the alphabetically sorted parameters."""
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


class ObjectStoreClient:
    """Async client for blob upload and signed deletion."""

    def __init__(
        self,
        settings: StorageSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        clock=time.time,
    ):
        self.settings = settings or storage_settings
        self._http = http_client
        self._owns_http = http_client is None
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0)
        self._sleep = sleep
        self._clock = clock

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(self.settings.storage_timeout))
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _endpoint(self, resource_type: str, action: str) -> str:
        cloud = self.settings.cloudinary_cloud_name
        if not cloud:
            raise ConfigurationError("CLOUDINARY_CLOUD_NAME is required for object storage")
        return f"{self.settings.cloudinary_api_base}/{cloud}/{resource_type}/{action}"

    async def upload(
        self,
        file: BlobFile,
        upload_preset: str,
        folder: str | None = None,
        tags: list[str] | None = None,
    ) -> StoredBlob:
        """Upload a file with an unsigned preset and return its URL and handle."""
        if not upload_preset:
            raise ConfigurationError("Upload preset is required")

        resource_type = detect_resource_type(file.content_type)
        url = self._endpoint(resource_type, "upload")

        data = {"upload_preset": upload_preset}
        folder = folder if folder is not None else self.settings.cloudinary_folder
        if folder:
            data["folder"] = folder
        if tags:
            data["tags"] = ",".join(tags)

        async def send():
            response = await self._post(
                url,
                idempotent=False,
                data=data,
                files={"file": (file.filename, file.data, file.content_type)},
            )
            return response.json()

        body = await with_retry(send, self.retry_policy, sleep=self._sleep, description=f"Upload of {file.filename}")

        blob = StoredBlob(
            url=body.get("secure_url") or body["url"],
            public_id=body["public_id"],
            resource_type=body.get("resource_type", resource_type),
            format=body.get("format"),
            bytes=body.get("bytes"),
        )
        logger.info(f"☁️ Uploaded {file.filename} ({file.size / 1024:.1f} KB) as {blob.public_id}")
        return blob

    async def delete(self, public_id: str, resource_type: str = "raw") -> bool:
        """Delete a blob with a signed destroy request. True if the store confirmed it."""
        if not public_id:
            logger.warning("[Cleanup] No public id provided for deletion")
            return False
        if not self.settings.can_sign:
            raise ConfigurationError("Cloudinary API key and secret are required for deletion")

        url = self._endpoint(resource_type, "destroy")
        params = {"public_id": public_id, "timestamp": str(int(self._clock()))}
        data = {
            **params,
            "api_key": self.settings.cloudinary_api_key,
            "signature": sign_params(params, self.settings.cloudinary_api_secret),
        }

        async def send():
            response = await self._post(url, data=data)
            return response.json()

        body = await with_retry(send, self.retry_policy, sleep=self._sleep, description=f"Deletion of {public_id}")
        deleted = body.get("result") == "ok"

        if deleted:
            logger.info(f"🗑️ Deleted blob {public_id}")
        else:
            logger.warning(f"Blob {public_id} was not deleted: {body.get('result')}")
        return deleted

    async def delete_by_url(self, url: str) -> bool:
        public_id = public_id_from_url(url)
        if not public_id:
            logger.warning(f"[Cleanup] Could not derive a public id from {url}")
            return False
        return await self.delete(public_id, resource_type_from_url(url))

    async def _post(self, url: str, idempotent: bool = True, **kwargs) -> httpx.Response:
        """
        POST to the object store.

        A non-idempotent request that fails after it may have reached the
        server is not retryable: repeating an upload could store a second blob.
        """
        try:
            response = await self._client().post(url, **kwargs)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise TransientIOError(f"Object store unreachable: {e}") from e
        except httpx.TransportError as e:
            if not idempotent:
                raise ExternalServiceError(
                    "Object store did not confirm the request; it may have been stored",
                    detail=str(e) or type(e).__name__,
                ) from e
            if isinstance(e, httpx.TimeoutException):
                raise TransientIOError(f"Object store request timed out: {url}") from e
            raise TransientIOError(f"Object store unreachable: {e}") from e

        raise_for_status(response, "Object store")
        return response


def raise_for_status(response: httpx.Response, service: str) -> None:
    """Translate an HTTP status into the retry taxonomy."""
    if response.is_success:
        return

    code = response.status_code
    if code == 429:
        raise RateLimitError(f"{service} rate limit exceeded", retry_after=_retry_after(response))
    if code >= 500:
        raise TransientIOError(f"{service} error: HTTP {code}")

    raise ExternalServiceError(
        f"{service} rejected the request: HTTP {code}",
        status_code=code,
        detail=_error_message(response),
    )


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300] or None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message")
    return str(error) if error else None
