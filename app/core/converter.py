"""Nachrichten-Pipeline des Dify-WeCom Relay Gateways: verbindet Vorfilter,
Konversationsverwaltung, Dify-Aufruf und Zustellung an WeCom."""
import json
import logging
from typing import List, Optional, Tuple

from app.core.artifacts import file_type_from_path
from app.core.config import Settings, settings as default_settings
from app.core.conversation_store import ConversationStore, resolve_conversation_id
from app.core.dify import DifyClient
from app.core.errors import ConfigurationError, EmptyMessageError, PipelineError, RelayError
from app.core.formatter import ResponseFormatter
from app.core.models import (
    BotType,
    ChatRequest,
    CompletionRequest,
    FileAttachment,
    WorkflowRequest,
)
from app.core.wecom import OutboundMessage, TextMessage, WeComRobot

logger = logging.getLogger(__name__)

IMAGE_COMMAND_PREFIX = "/image "
IMAGE_COMMAND_REPLY = "Entschuldigung, die Bildgenerierung ist noch nicht verfügbar."


def preprocess_message(message: str) -> Tuple[str, bool]:
    """Vorfilter vor dem Dify-Aufruf.

    Rückgabe:
        (text, handled) - bei ``handled`` ist ``text`` die direkte Antwort
        und Dify wird nicht aufgerufen.
    """
    if message.startswith(IMAGE_COMMAND_PREFIX):
        logger.info(f"Image command recognised: '{message}'")
        return IMAGE_COMMAND_REPLY, True
    return message, False


def serialize_workflow_data(data: dict) -> str:
    try:
        return json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        logger.error(f"Failed to serialize Dify workflow response: {exc}")
        return f"Error: failed to serialize workflow response: {exc}"


class MessageConverter:
    """Nimmt eine eingehende Nachricht entgegen, fragt Dify und stellt die
    Antwort genau einmal an WeCom zu."""

    def __init__(
        self,
        dify: DifyClient,
        robot: WeComRobot,
        store: ConversationStore,
        config: Optional[Settings] = None,
    ) -> None:
        self.dify = dify
        self.robot = robot
        self.store = store
        self.config = config or default_settings
        self.formatter = ResponseFormatter(dify, robot)

    def _bot_type(self) -> BotType:
        try:
            return BotType(self.config.dify_bot_type)
        except ValueError:
            raise ConfigurationError(f"unsupported dify bot type: {self.config.dify_bot_type}")

    async def convert_and_send(
        self,
        message: str,
        user: str,
        conversation_id: str = "",
        file_path: str = "",
    ) -> OutboundMessage:
        """Haupteinstieg der Pipeline.

        Ablauf:
        1) Vorfilter; eine direkte Antwort geht als Text raus, ohne Dify.
        2) Leere Nachricht -> Default-Prompt; ohne Prompt und Anhang Fehler.
        3) Konversations-ID bestimmen.
        4) Chat-Bots: Anhang vorher zu Dify hochladen.
        5) Dify für den konfigurierten Bot-Typ aufrufen.
        6) Antwort klassifizieren und an WeCom zustellen.

        Fehler aus 3-6 werden als ``PipelineError`` mit Stufennamen geworfen.
        """
        logger.info(
            f"Processing message, user='{user}', conversation='{conversation_id}', "
            f"message='{message}', file='{file_path}'"
        )

        processed, handled = preprocess_message(message)
        if handled:
            logger.info("Message handled by pre-filter, skipping Dify")
            reply = TextMessage(processed)
            try:
                await self.robot.deliver(reply)
            except RelayError as exc:
                raise PipelineError("deliver", str(exc)) from exc
            return reply
        message = processed

        if not message and self.config.dify_default_prompt:
            message = self.config.dify_default_prompt
            logger.info(f"Empty message, using default prompt: '{message}'")
        if not message and not file_path:
            raise EmptyMessageError("message content or file path cannot be empty")

        bot_type = self._bot_type()

        try:
            current_id = resolve_conversation_id(self.store, user, conversation_id)
        except RelayError as exc:
            raise PipelineError("conversation", str(exc)) from exc

        logger.info(f"Calling Dify API, bot type: {bot_type.value}")
        if bot_type == BotType.CHAT:
            payload = await self._call_chat(message, user, current_id, file_path)
        elif bot_type == BotType.COMPLETION:
            payload = await self._call_completion(message, user)
        else:
            payload = await self._call_workflow(message, user)

        try:
            sent = await self.formatter.deliver(payload, bot_type)
        except RelayError as exc:
            raise PipelineError("deliver", str(exc)) from exc

        logger.info("Message delivered to WeCom")
        return sent

    async def _upload_attachment(self, file_path: str, user: str) -> List[FileAttachment]:
        logger.info(f"Uploading attachment '{file_path}' to Dify")
        try:
            upload = await self.dify.upload_file(file_path, user)
        except RelayError as exc:
            raise PipelineError("upload", f"failed to upload file to Dify: {exc}") from exc

        file_id = upload.get("id")
        if not isinstance(file_id, str) or not file_id:
            logger.warning("File uploaded but Dify returned no file id, continuing without attachment")
            return []

        file_type = file_type_from_path(file_path)
        logger.info(f"Attachment uploaded, file id: {file_id}, type: {file_type}")
        return [FileAttachment(type=file_type, upload_file_id=file_id)]

    async def _call_chat(self, message: str, user: str, conversation_id: str, file_path: str) -> str:
        files = await self._upload_attachment(file_path, user) if file_path else []
        request = ChatRequest(
            user=user,
            query=message,
            conversation_id=conversation_id,
            files=files or None,
        )
        try:
            response = await self.dify.chat(request)
        except RelayError as exc:
            raise PipelineError("dify", f"dify chat api call failed: {exc}") from exc

        # Von Dify neu angelegte Gespräche für den nächsten Aufruf merken.
        if response.conversation_id and response.conversation_id != conversation_id:
            self.store.save(user, response.conversation_id)

        logger.info(f"Dify chat answer received, length: {len(response.answer)}")
        return response.answer

    async def _call_completion(self, message: str, user: str) -> str:
        request = CompletionRequest(user=user, prompt=message)
        try:
            response = await self.dify.complete(request)
        except RelayError as exc:
            raise PipelineError("dify", f"dify completion api call failed: {exc}") from exc

        logger.info(f"Dify completion text received, length: {len(response.text)}")
        return response.text

    async def _call_workflow(self, message: str, user: str) -> str:
        request = WorkflowRequest(
            user=user,
            inputs={"query": message},
            workflow_id=self.config.dify_workflow_id,
        )
        try:
            response = await self.dify.run_workflow(request)
        except RelayError as exc:
            raise PipelineError("dify", f"dify workflow api call failed: {exc}") from exc

        payload = serialize_workflow_data(response.data)
        logger.info(f"Dify workflow data received, length: {len(payload)}")
        return payload
