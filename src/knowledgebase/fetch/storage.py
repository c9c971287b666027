"""Read-only access to uploaded objects in S3-compatible storage."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from urllib.parse import unquote, urlsplit

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from knowledgebase.core.config import StorageSettings
from knowledgebase.ingestion.errors import FetchFailed, MissingSourceField, TooLarge


@dataclass(slots=True, frozen=True)
class StoredObject:
    """Downloaded object body with its stored content type."""

    path: str
    body: bytes
    content_type: str | None = None


class ObjectStorageReader:
    """Download objects by ``s3://bucket/key`` URI or bare key in the default bucket."""

    def __init__(
        self,
        *,
        settings: StorageSettings,
        session: aioboto3.Session | None = None,
    ) -> None:
        self._settings = settings
        self._session = session or aioboto3.Session()

    async def download(self, path: str, *, max_bytes: int) -> StoredObject:
        bucket, key = self.parse_path(path)
        client_kwargs = {
            "endpoint_url": self._settings.endpoint_url,
            "aws_access_key_id": self._settings.access_key,
            "aws_secret_access_key": self._settings.secret_key,
            "region_name": self._settings.region,
        }

        try:
            async with self._session.client("s3", **client_kwargs) as client:
                head = await client.head_object(Bucket=bucket, Key=key)
                size = int(head.get("ContentLength") or 0)
                if size > max_bytes:
                    raise TooLarge(f"{path} is {size} bytes (limit {max_bytes})")
                response = await client.get_object(Bucket=bucket, Key=key)
                body = await response["Body"].read()
        except ClientError as exc:
            error_code = getattr(exc, "response", {}).get("Error", {}).get("Code")
            if error_code in {"404", "NoSuchKey", "NotFound"}:
                raise FetchFailed(
                    f"stored object {path} does not exist", retryable=False
                ) from exc
            raise FetchFailed(f"failed to download {path}", retryable=True) from exc
        except BotoCoreError as exc:
            raise FetchFailed(f"failed to download {path}", retryable=True) from exc
        except asyncio.CancelledError:  # pragma: no cover - propagation
            raise

        if len(body) > max_bytes:
            raise TooLarge(f"{path} exceeded {max_bytes} bytes")
        return StoredObject(path=path, body=body, content_type=response.get("ContentType"))

    def parse_path(self, path: str) -> tuple[str, str]:
        cleaned = (path or "").strip()
        if not cleaned:
            raise MissingSourceField("storage path is empty")
        if "://" not in cleaned:
            return self._settings.bucket, cleaned.lstrip("/")

        parsed = urlsplit(cleaned)
        if parsed.scheme not in {"s3", "minio"}:
            raise MissingSourceField(f"unsupported storage URI scheme: {parsed.scheme}")
        if not parsed.netloc or not parsed.path.strip("/"):
            raise MissingSourceField("storage URI must include bucket and key")
        return parsed.netloc, parsed.path.lstrip("/")

    def path_from_url(self, url: str) -> str | None:
        """Map a public object URL served by the storage endpoint to a storage path.

        Returns ``None`` for URLs that do not point at the configured bucket.
        """

        parsed = urlsplit(url)
        if parsed.scheme in {"s3", "minio"}:
            return url
        for base in filter(None, (self._settings.public_base_url, self._settings.endpoint_url)):
            root = urlsplit(base)
            if parsed.netloc != root.netloc:
                continue
            prefix = root.path.rstrip("/")
            path = unquote(parsed.path)
            if prefix and not path.startswith(prefix + "/"):
                continue
            remainder = path[len(prefix):].lstrip("/")
            bucket, _, key = remainder.partition("/")
            if bucket == self._settings.bucket and key:
                return f"s3://{bucket}/{key}"
        return None
