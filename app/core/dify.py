"""Steuert die Kommunikation mit der Dify API (Chat, Completion, Workflow)
inkl. Datei-Upload, Artefakt-Download und Wiederholungslogik für das
Dify-WeCom Relay Gateway."""
import asyncio
import logging
import os
from typing import Any, Dict, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from app.core.config import Settings, settings as default_settings
from app.core.errors import (
    BackendProtocolError,
    ConfigurationError,
    LocalIOError,
    RequestEncodeError,
    ResponseDecodeError,
    TransportError,
)
from app.core.models import (
    RESPONSE_MODE_BLOCKING,
    ChatRequest,
    ChatResponse,
    CompletionRequest,
    CompletionResponse,
    DifyErrorResponse,
    WorkflowRequest,
    WorkflowResponse,
)

logger = logging.getLogger(__name__)

CHAT_MESSAGES_PATH = "/v1/chat-messages"
COMPLETION_MESSAGES_PATH = "/v1/completion-messages"
WORKFLOW_RUN_PATH = "/v1/workflows/run"
FILE_UPLOAD_PATH = "/v1/files/upload"

MAX_RETRIES = 3
RETRY_BACKOFF_SECONDS = 1.0

ModelT = TypeVar("ModelT", bound=BaseModel)


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def _log_retry(log_prefix: str):
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Dify {log_prefix} request failed, attempt "
            f"{retry_state.attempt_number}/{MAX_RETRIES}: {exc!r}, retrying in {wait}s"
        )

    return before_sleep


class DifyClient:
    """Sendet Anfragen an die Dify API und normalisiert die drei
    Antwortformate (answer, text, data)."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_backoff: float = RETRY_BACKOFF_SECONDS,
    ) -> None:
        self.config = config or default_settings
        # Ein Client für alle Aufrufe; Timeout gilt pro Request.
        self.client = client or httpx.AsyncClient(timeout=self.config.dify_timeout)
        self.retry_backoff = retry_backoff

    async def aclose(self) -> None:
        await self.client.aclose()

    def _ensure_configured(self) -> None:
        if not self.config.dify_base_url or not self.config.dify_api_key:
            raise ConfigurationError("dify base url or api key is not configured")

    async def _request(
        self,
        method: str,
        path: str,
        log_prefix: str,
        response_model: Optional[Type[Any]] = None,
        **kwargs: Any,
    ) -> Any:
        """Führt einen Dify-Aufruf mit bis zu ``MAX_RETRIES`` Versuchen aus.

        - Wiederholt wird nur bei Verbindungsfehlern, nie bei HTTP-Fehlerstatus.
        - Bei Status != 2xx wird der Dify-Fehlerkörper ``{code, message, status}``
          gelesen; ist er nicht lesbar, landen Status und Rohtext im Fehler.
        - ``response_model`` ist ein Pydantic-Modell oder ``dict``; ohne Modell
          wird der Body nicht ausgewertet.
        """
        url = f"{self.config.dify_base_url.rstrip('/')}{path}"
        headers = {"Authorization": f"Bearer {self.config.dify_api_key}"}

        retrying = AsyncRetrying(
            stop=stop_after_attempt(MAX_RETRIES),
            wait=wait_incrementing(start=self.retry_backoff, increment=self.retry_backoff),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=_log_retry(log_prefix),
            sleep=_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    logger.info(f"Dify {log_prefix} request {number}/{MAX_RETRIES}: {method} {url}")
                    response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            logger.warning(
                f"Dify {log_prefix} request failed, attempt {MAX_RETRIES}/{MAX_RETRIES}: {exc!r}"
            )
            raise TransportError(
                f"{log_prefix} request failed after {MAX_RETRIES} attempts: {exc!r}"
            ) from exc

        body = response.text
        logger.info(f"Dify {log_prefix} response status: {response.status_code}")
        logger.info(f"Dify {log_prefix} response body: {body}")

        if not response.is_success:
            try:
                error = DifyErrorResponse.model_validate_json(body)
            except ValidationError:
                raise BackendProtocolError(
                    f"{log_prefix} returned status {response.status_code}: {body}",
                    status_code=response.status_code,
                    body=body,
                )
            raise BackendProtocolError(
                f"{log_prefix} error: code={error.code}, message={error.message}",
                status_code=response.status_code,
                code=error.code,
                backend_message=error.message,
                body=body,
            )

        if response_model is None:
            logger.info(f"Dify {log_prefix} call succeeded")
            return None

        try:
            if response_model is dict:
                decoded = response.json()
                if not isinstance(decoded, dict):
                    raise ValueError("expected a JSON object")
            else:
                decoded = response_model.model_validate_json(body)
        except (ValueError, ValidationError) as exc:
            raise ResponseDecodeError(f"failed to parse {log_prefix} response: {exc}") from exc

        logger.info(f"Dify {log_prefix} call succeeded")
        return decoded

    async def _post_json(
        self, path: str, log_prefix: str, request: BaseModel, response_model: Type[ModelT]
    ) -> ModelT:
        try:
            payload = request.model_dump(mode="json", exclude_none=True)
        except (TypeError, ValueError) as exc:
            raise RequestEncodeError(f"failed to marshal {log_prefix} request body: {exc}") from exc
        return await self._request("POST", path, log_prefix, response_model, json=payload)

    def _with_default_role(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        inputs = dict(inputs or {})
        inputs.setdefault("role", self.config.dify_default_role)
        return inputs

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Ruft eine Chat-App auf. Eine leere ``answer`` gilt als Protokollfehler."""
        logger.info(
            f"Calling Dify chat API, user='{request.user}', "
            f"conversation='{request.conversation_id}', query='{request.query}'"
        )
        self._ensure_configured()
        request = request.model_copy(
            update={
                "inputs": self._with_default_role(request.inputs),
                "response_mode": RESPONSE_MODE_BLOCKING,
            }
        )
        response = await self._post_json(CHAT_MESSAGES_PATH, "Chat API", request, ChatResponse)
        if not response.answer:
            raise BackendProtocolError("dify chat api response contains no answer")
        return response

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Ruft eine Completion-App auf. Leerer ``text`` gilt als Protokollfehler."""
        logger.info(f"Calling Dify completion API, user='{request.user}', prompt='{request.prompt}'")
        self._ensure_configured()
        request = request.model_copy(
            update={
                "inputs": self._with_default_role(request.inputs),
                "response_mode": RESPONSE_MODE_BLOCKING,
            }
        )
        response = await self._post_json(
            COMPLETION_MESSAGES_PATH, "Completion API", request, CompletionResponse
        )
        if not response.text:
            raise BackendProtocolError("dify completion api response contains no text")
        return response

    async def run_workflow(self, request: WorkflowRequest) -> WorkflowResponse:
        """Startet einen Workflow. Keine Default-Rolle, ``data`` darf nicht fehlen."""
        logger.info(
            f"Calling Dify workflow API, user='{request.user}', workflow='{request.workflow_id}'"
        )
        self._ensure_configured()
        request = request.model_copy(
            update={
                "inputs": dict(request.inputs or {}),
                "response_mode": RESPONSE_MODE_BLOCKING,
            }
        )
        response = await self._post_json(WORKFLOW_RUN_PATH, "Workflow API", request, WorkflowResponse)
        if response.data is None:
            raise BackendProtocolError("dify workflow api response contains no data")
        return response

    async def upload_file(self, file_path: str, user: str) -> Dict[str, Any]:
        """Lädt eine lokale Datei als multipart ``file`` + ``user`` zu Dify hoch.

        Gibt die dekodierte Antwort zurück; die ``id`` darin ist das Handle
        für einen späteren Chat-Aufruf.
        """
        logger.info(f"Uploading file '{file_path}' to Dify for user '{user}'")
        self._ensure_configured()
        try:
            fh = open(file_path, "rb")
        except OSError as exc:
            raise LocalIOError(f"failed to open file {file_path}: {exc}") from exc

        with fh:
            # httpx streamt das Dateiobjekt und spult es bei jedem Versuch zurück.
            response = await self._request(
                "POST",
                FILE_UPLOAD_PATH,
                "File Upload API",
                dict,
                files={"file": (os.path.basename(file_path), fh)},
                data={"user": user},
            )
        logger.info(f"File '{file_path}' uploaded to Dify")
        return response

    async def download_file(self, file_url: str, output_path: str) -> None:
        """Lädt ``file_url`` per GET direkt nach ``output_path`` (gestreamt).

        Ohne Auth-Header und ohne Wiederholung; das Aufräumen der Datei bei
        einem Fehler ist Sache des Aufrufers.
        """
        logger.info(f"Downloading '{file_url}' to '{output_path}'")
        try:
            async with self.client.stream("GET", file_url) as response:
                if not response.is_success:
                    raise BackendProtocolError(
                        f"failed to download file, received status code "
                        f"{response.status_code} from {file_url}",
                        status_code=response.status_code,
                    )
                try:
                    with open(output_path, "wb") as out:
                        async for chunk in response.aiter_bytes():
                            out.write(chunk)
                except OSError as exc:
                    raise LocalIOError(
                        f"failed to write downloaded file to {output_path}: {exc}"
                    ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise TransportError(f"failed to download file from {file_url}: {exc!r}") from exc

        logger.info(f"Downloaded '{file_url}' to '{output_path}'")
