"""
Remote asset store client.

Uploads inline images (data URIs) so video providers can fetch them by URL.
Configured under ``asset_store`` in ~/.studioflow/configuration.json:

    {"asset_store": {"endpoint": "https://assets.example.com/upload",
                     "bucket": "canvas", "public_base_url": "https://cdn.example.com",
                     "token_env_var": "STUDIOFLOW_ASSET_TOKEN"}}
"""

import base64
import binascii
import logging
import re
from typing import Any

import httpx

from studioflow.config import get_asset_store_config
from studioflow.engine.services import AssetUploader

logger = logging.getLogger(__name__)

DATA_URI = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(?:;[\w=.-]+)*;base64,(?P<data>.*)$", re.DOTALL)


def decode_data_uri(data: str) -> tuple[bytes, str]:
    """
    Split a base64 data URI into raw bytes and its MIME type.

    Raises:
        ValueError: if ``data`` is not a base64 data URI
    """
    match = DATA_URI.match(data)
    if not match:
        raise ValueError("Expected a base64 data URI")
    try:
        raw = base64.b64decode(match.group("data"), validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e
    return raw, match.group("mime") or "application/octet-stream"


class HttpAssetUploader(AssetUploader):
    """``AssetUploader`` that POSTs files to an HTTP upload endpoint."""

    def __init__(
        self,
        endpoint: str,
        bucket: str = "",
        token: str | None = None,
        public_base_url: str | None = None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = endpoint
        self.bucket = bucket
        self.token = token
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls) -> "HttpAssetUploader | None":
        """Uploader from the user configuration, or None when no store is configured."""
        config = get_asset_store_config()
        if config is None:
            return None
        return cls(
            endpoint=config["endpoint"],
            bucket=config.get("bucket", ""),
            token=config.get("token"),
            public_base_url=config.get("public_base_url"),
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def upload(self, data: str, filename: str) -> str:
        """
        Upload ``data`` and return its public URL.

        Remote URLs are returned unchanged.

        Raises:
            ValueError: if ``data`` is neither a URL nor a data URI
            httpx.HTTPError: if the upload fails
        """
        if data.startswith(("http://", "https://")):
            return data

        raw, mime = decode_data_uri(data)
        files = {"file": (filename, raw, mime)}
        form = {"bucket": self.bucket, "key": filename}

        if self._client is not None:
            response = await self._client.post(
                self.endpoint, files=files, data=form, headers=self._headers()
            )
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.endpoint, files=files, data=form, headers=self._headers()
                )
        response.raise_for_status()

        url = self._url_from_response(response, filename)
        logger.info(f"Uploaded {filename} ({len(raw)} bytes) to {url}")
        return url

    def _url_from_response(self, response: httpx.Response, filename: str) -> str:
        body: dict[str, Any] = {}
        if response.headers.get("content-type", "").startswith("application/json"):
            body = response.json()
        url = body.get("url") or body.get("public_url")
        if url:
            return url
        if self.public_base_url:
            prefix = self.public_base_url
            if self.bucket:
                prefix = f"{prefix}/{self.bucket}"
            return f"{prefix}/{filename}"
        raise ValueError("Upload response has no URL and no public_base_url is configured")
