"""Wertet die normalisierte Dify-Antwort aus und wählt den passenden
WeCom-Nachrichtentyp (Bild, Datei, Markdown oder Text)."""
import json
import logging
from dataclasses import dataclass
from typing import Union

from app.core.artifacts import extension_from_url, scratch_file
from app.core.dify import DifyClient
from app.core.errors import LocalIOError, RelayError
from app.core.models import BotType
from app.core.wecom import (
    MAX_TEXT_BYTES,
    FileMessage,
    ImageMessage,
    MarkdownMessage,
    OutboundMessage,
    TextMessage,
    WeComRobot,
)

logger = logging.getLogger(__name__)

TRUNCATION_NOTICE = "\n... (Nachricht gekürzt, den vollständigen Inhalt finden Sie im Dify-Backend)"


@dataclass(frozen=True)
class ImageReply:
    url: str


@dataclass(frozen=True)
class FileReply:
    url: str


@dataclass(frozen=True)
class MarkdownReply:
    content: str


@dataclass(frozen=True)
class WorkflowDataReply:
    raw: str


@dataclass(frozen=True)
class TextReply:
    content: str


Reply = Union[ImageReply, FileReply, MarkdownReply, WorkflowDataReply, TextReply]


def _non_empty_str(obj: dict, key: str) -> str:
    value = obj.get(key)
    return value if isinstance(value, str) else ""


def classify_reply(payload: str, bot_type: BotType) -> Reply:
    """Ordnet die Antwort genau einer Variante zu; der erste Treffer gewinnt.

    Reihenfolge: ``image_url``, ``file_url``, ``markdown``, ``data`` (nur bei
    Workflow-Bots), sonst Text. Kein JSON-Objekt bedeutet immer Text.
    """
    try:
        obj = json.loads(payload)
    except ValueError:
        return TextReply(payload)
    if not isinstance(obj, dict):
        return TextReply(payload)

    image_url = _non_empty_str(obj, "image_url")
    if image_url:
        return ImageReply(image_url)
    file_url = _non_empty_str(obj, "file_url")
    if file_url:
        return FileReply(file_url)
    markdown = _non_empty_str(obj, "markdown")
    if markdown:
        return MarkdownReply(markdown)
    if "data" in obj and bot_type == BotType.WORKFLOW:
        return WorkflowDataReply(payload)
    return TextReply(payload)


def truncate_text(text: str, limit: int = MAX_TEXT_BYTES, notice: str = TRUNCATION_NOTICE) -> str:
    """Kürzt ``text`` auf höchstens ``limit`` Byte (UTF-8) inkl. Hinweis.

    Es wird nie mitten in einem Mehrbyte-Zeichen geschnitten; Texte bis
    genau ``limit`` Byte bleiben unverändert.
    """
    encoded = text.encode("utf-8")
    if len(encoded) <= limit:
        return text

    logger.info(f"Reply length {len(encoded)} bytes exceeds WeCom limit {limit}, truncating")
    budget = limit - len(notice.encode("utf-8"))
    # Ein angeschnittenes Zeichen am Ende fällt beim Dekodieren weg.
    head = encoded[:budget].decode("utf-8", errors="ignore")
    return head + notice


class ResponseFormatter:
    """Stellt eine Dify-Antwort genau einmal an WeCom zu."""

    def __init__(self, dify: DifyClient, robot: WeComRobot) -> None:
        self.dify = dify
        self.robot = robot

    async def deliver(self, payload: str, bot_type: BotType) -> OutboundMessage:
        """Klassifiziert ``payload``, sendet und liefert die gesendete Nachricht.

        Bild- und Datei-Fehler werden zu einer Textnachricht an den Nutzer
        herabgestuft; nur ein Fehler beim Senden dieses Texts wird geworfen.
        """
        logger.info(f"Post-processing Dify reply, length: {len(payload)}")
        reply = classify_reply(payload, bot_type)
        logger.info(f"Dify reply classified as {type(reply).__name__}")

        if isinstance(reply, ImageReply):
            return await self._deliver_media(reply.url, "image")
        if isinstance(reply, FileReply):
            return await self._deliver_media(reply.url, "file")
        if isinstance(reply, MarkdownReply):
            message: OutboundMessage = MarkdownMessage(reply.content)
        elif isinstance(reply, WorkflowDataReply):
            message = TextMessage(truncate_text(reply.raw))
        else:
            message = TextMessage(truncate_text(reply.content))

        await self.robot.deliver(message)
        return message

    async def _deliver_media(self, url: str, kind: str) -> OutboundMessage:
        if kind == "image":
            label = "ein Bild"
            default_ext = ".png"
        else:
            label = "eine Datei"
            default_ext = ".bin"
        download_failed = f"Dify hat {label} geliefert: {url}, aber der Download ist fehlgeschlagen."
        send_failed = f"Dify hat {label} geliefert: {url}, aber das Senden ist fehlgeschlagen."

        fallback: TextMessage
        try:
            with scratch_file(f"dify_{kind}_", extension_from_url(url, default_ext)) as path:
                try:
                    await self.dify.download_file(url, path)
                except RelayError as exc:
                    logger.error(f"Failed to download Dify {kind} {url}: {exc}")
                    fallback = TextMessage(download_failed)
                else:
                    message = ImageMessage(path) if kind == "image" else FileMessage(path)
                    try:
                        await self.robot.deliver(message)
                        return message
                    except RelayError as exc:
                        logger.error(f"Failed to send {kind} to WeCom: {exc}")
                        fallback = TextMessage(send_failed)
        except LocalIOError as exc:
            logger.error(f"Failed to create temporary {kind} file: {exc}")
            fallback = TextMessage(download_failed)

        await self.robot.deliver(fallback)
        return fallback
