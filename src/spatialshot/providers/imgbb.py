"""ImgBB upload client backing the ``upload-image`` command."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..bridge import Command
from ..exceptions import UploadError
from ..transport import InProcessTransport

LOGGER = logging.getLogger(__name__)

DEFAULT_UPLOAD_URL = "https://api.imgbb.com/1/upload"


def strip_data_url(image_base64: str) -> str:
    """Return raw base64, dropping a ``data:<mime>;base64,`` prefix if present."""
    if image_base64.startswith("data:"):
        return image_base64.partition(",")[2]
    return image_base64


class ImgbbUploader:
    """Upload images to ImgBB and return their public URL."""

    def __init__(
        self,
        upload_url: str = DEFAULT_UPLOAD_URL,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.upload_url = upload_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def upload(self, *, image_base64: str, secret: str, **_: Any) -> str:
        if not secret:
            raise UploadError("ImgBB API key is required for upload.")
        try:
            response = await self._client.post(
                self.upload_url,
                data={"key": secret, "image": strip_data_url(image_base64)},
            )
        except httpx.HTTPError as exc:
            raise UploadError(f"Unable to reach ImgBB: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400 or not isinstance(payload, dict):
            detail = ""
            if isinstance(payload, dict):
                error = payload.get("error")
                if isinstance(error, dict):
                    detail = str(error.get("message", ""))
            raise UploadError(
                f"ImgBB upload failed ({response.status_code}){': ' + detail if detail else ''}"
            )

        data = payload.get("data")
        url = data.get("url") if isinstance(data, dict) else None
        if not isinstance(url, str) or not url:
            raise UploadError("ImgBB response did not include an image URL.")
        LOGGER.info("imgbb.upload.complete", extra={"event": "imgbb.upload.complete"})
        return url

    def register(self, transport: InProcessTransport) -> None:
        transport.register(Command.UPLOAD_IMAGE, lambda args: self.upload(**args))
