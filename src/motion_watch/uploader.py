"""Uploaders that deliver finished segments to a notification service."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Mapping, Protocol

import av
import httpx

from .config import TelegramConfig

logger = logging.getLogger(__name__)


class UploadError(RuntimeError):
    """Raised when a segment could not be delivered."""


class Uploader(Protocol):
    """Anything able to deliver a video file with a caption."""

    async def send(self, path: Path, caption: str) -> Mapping[str, Any]:
        ...


def probe_video_size(path: Path) -> tuple[int, int] | None:
    """Return the ``(width, height)`` of the first video stream in *path*."""

    try:
        with av.open(Path(path).as_posix()) as container:
            if not container.streams.video:
                return None
            context = container.streams.video[0].codec_context
            return int(context.width), int(context.height)
    except (OSError, av.FFmpegError) as exc:
        logger.debug("Unable to probe %s: %s", path, exc)
        return None


class TelegramUploader:
    """Send segments to a chat through the Telegram Bot API ``sendVideo`` call."""

    def __init__(
        self,
        config: TelegramConfig,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout)
        return self._client

    async def send(self, path: Path, caption: str) -> Mapping[str, Any]:
        path = Path(path)
        logger.info("Sending video %s", path.name)
        size = await asyncio.to_thread(probe_video_size, path)

        data: dict[str, str] = {
            "chat_id": self._config.chat_id,
            "supports_streaming": "true",
        }
        if size is not None:
            data["width"] = str(size[0])
            data["height"] = str(size[1])
        if caption:
            data["caption"] = caption

        try:
            video = await asyncio.to_thread(path.open, "rb")
        except OSError as exc:
            raise UploadError(f"Unable to read {path.name}: {exc}") from exc

        url = f"{self._config.api_url}/sendVideo"
        client = await self._get_client()
        try:
            # httpx reads file objects in chunks while sending.
            files = {"video": (path.name, video, "video/mp4")}
            response = await client.post(url, data=data, files=files)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise UploadError(
                f"Telegram returned HTTP {status}: {exc.response.text.strip()}"
            ) from exc
        except httpx.HTTPError as exc:
            raise UploadError(f"Telegram request failed: {exc}") from exc
        finally:
            video.close()

        try:
            body = response.json()
        except ValueError as exc:
            raise UploadError("Telegram returned an invalid JSON response") from exc
        if not isinstance(body, dict) or not body.get("ok", False):
            description = body.get("description") if isinstance(body, dict) else None
            raise UploadError(f"Telegram rejected the video: {description or 'unknown error'}")
        logger.info("Video sent: %s", path.name)
        result = body.get("result")
        return result if isinstance(result, dict) else {}

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


__all__ = ["TelegramUploader", "UploadError", "Uploader", "probe_video_size"]
