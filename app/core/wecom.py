"""Sendet Nachrichten an einen WeCom-Gruppenroboter (Webhook) inkl.
Medien-Upload für Bild, Datei, Sprache und Video."""
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from pydantic import ValidationError

from app.core.config import Settings, settings as default_settings
from app.core.errors import ConfigurationError, DeliveryError, LocalIOError, RateLimitError
from app.core.models import NewsArticle, WeComResult

logger = logging.getLogger(__name__)

# WeCom: Textnachrichten dürfen höchstens 2048 Byte lang sein.
MAX_TEXT_BYTES = 2048
RATE_LIMIT_ERRCODE = 45009
UPLOAD_MEDIA_PATH = "/cgi-bin/webhook/upload_media"


@dataclass(frozen=True)
class TextMessage:
    content: str


@dataclass(frozen=True)
class MarkdownMessage:
    content: str


@dataclass(frozen=True)
class ImageMessage:
    path: str


@dataclass(frozen=True)
class FileMessage:
    path: str


OutboundMessage = Union[TextMessage, MarkdownMessage, ImageMessage, FileMessage]


class WeComRobot:
    """Kapselt den WeCom-Webhook: eine Methode pro Nachrichtentyp."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or default_settings
        self.webhook_url = self.config.wecom_webhook_url
        self.client = client or httpx.AsyncClient(timeout=self.config.wecom_timeout)

    async def aclose(self) -> None:
        await self.client.aclose()

    def _webhook_key(self) -> str:
        key = parse_qs(urlparse(self.webhook_url).query).get("key", [""])[0]
        if not key:
            raise ConfigurationError("wecom webhook url is missing the 'key' parameter")
        return key

    def _upload_url(self, media_type: str) -> str:
        parsed = urlparse(self.webhook_url)
        query = urlencode({"key": self._webhook_key(), "type": media_type})
        return f"{parsed.scheme}://{parsed.netloc}{UPLOAD_MEDIA_PATH}?{query}"

    @staticmethod
    def _parse_result(body: str, what: str) -> WeComResult:
        try:
            return WeComResult.model_validate_json(body)
        except ValidationError as exc:
            raise DeliveryError(f"failed to parse {what} response: {exc}, body: {body}") from exc

    async def upload_media(self, file_path: str, media_type: str) -> str:
        """Lädt eine lokale Datei hoch und liefert die ``media_id`` von WeCom."""
        logger.info(f"Uploading media '{file_path}' (type: {media_type}) to WeCom")
        upload_url = self._upload_url(media_type)

        try:
            fh = open(file_path, "rb")
        except OSError as exc:
            raise LocalIOError(f"failed to open media file {file_path}: {exc}") from exc

        with fh:
            try:
                response = await self.client.post(
                    upload_url, files={"media": (os.path.basename(file_path), fh)}
                )
            except httpx.HTTPError as exc:
                raise DeliveryError(f"failed to send media upload request: {exc!r}") from exc

        result = self._parse_result(response.text, "media upload")
        if result.errcode != 0:
            raise DeliveryError(
                f"wecom media upload failed: {result.errmsg} (errcode: {result.errcode})",
                errcode=result.errcode,
            )

        logger.info(f"WeCom media uploaded, media_id: {result.media_id}")
        return result.media_id

    async def send(self, msg_type: str, payload: Dict[str, Any]) -> None:
        """Sendet ``{"msgtype": T, T: payload}`` an den Webhook."""
        logger.info(f"Sending {msg_type} message to WeCom")
        message = {"msgtype": msg_type, msg_type: payload}

        try:
            response = await self.client.post(self.webhook_url, json=message)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"failed to send {msg_type} message: {exc!r}") from exc

        if response.status_code != 200:
            raise DeliveryError(
                f"failed to send {msg_type} message (status code {response.status_code}): "
                f"{response.text}"
            )

        result = self._parse_result(response.text, msg_type)
        if result.errcode == RATE_LIMIT_ERRCODE:
            logger.warning(f"WeCom rate limit hit: {result.errmsg} (errcode: {result.errcode})")
            raise RateLimitError(
                f"wecom {msg_type} message failed due to rate limit: {result.errmsg} "
                f"(errcode: {result.errcode})",
                errcode=result.errcode,
            )
        if result.errcode != 0:
            raise DeliveryError(
                f"wecom {msg_type} message failed: {result.errmsg} (errcode: {result.errcode})",
                errcode=result.errcode,
            )

        logger.info(f"{msg_type} message delivered to WeCom")

    async def send_text(
        self,
        content: str,
        mentioned_list: Optional[List[str]] = None,
        mentioned_mobile_list: Optional[List[str]] = None,
    ) -> None:
        payload: Dict[str, Any] = {"content": content}
        if mentioned_list:
            payload["mentioned_list"] = mentioned_list
        if mentioned_mobile_list:
            payload["mentioned_mobile_list"] = mentioned_mobile_list
        await self.send("text", payload)

    async def send_markdown(self, content: str) -> None:
        await self.send("markdown", {"content": content})

    async def send_markdown_v2(self, content: str) -> None:
        await self.send("markdown_v2", {"content": content})

    async def _send_media(self, file_path: str, media_type: str) -> None:
        try:
            media_id = await self.upload_media(file_path, media_type)
        except DeliveryError as exc:
            raise DeliveryError(
                f"failed to upload {media_type} for wecom: {exc}", errcode=exc.errcode
            ) from exc
        await self.send(media_type, {"media_id": media_id})

    async def send_image(self, file_path: str) -> None:
        await self._send_media(file_path, "image")

    async def send_file(self, file_path: str) -> None:
        await self._send_media(file_path, "file")

    async def send_voice(self, file_path: str) -> None:
        await self._send_media(file_path, "voice")

    async def send_video(self, file_path: str) -> None:
        await self._send_media(file_path, "video")

    async def send_news(self, articles: List[NewsArticle]) -> None:
        """Sendet eine Bild-Text-Nachricht mit 1 bis 8 Artikeln."""
        if not 1 <= len(articles) <= 8:
            raise ValueError("news message must contain 1 to 8 articles")
        await self.send("news", {"articles": [a.model_dump() for a in articles]})

    async def deliver(self, message: OutboundMessage) -> None:
        if isinstance(message, TextMessage):
            await self.send_text(message.content)
        elif isinstance(message, MarkdownMessage):
            await self.send_markdown(message.content)
        elif isinstance(message, ImageMessage):
            await self.send_image(message.path)
        elif isinstance(message, FileMessage):
            await self.send_file(message.path)
        else:
            raise TypeError(f"unsupported outbound message: {message!r}")
