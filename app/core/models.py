"""API-Modelle für das Dify-WeCom Relay Gateway: Webhook-Ein- und Ausgang,
Dify-Anfragen und -Antworten sowie WeCom-Rückmeldungen."""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


RESPONSE_MODE_BLOCKING = "blocking"


class BotType(str, Enum):
    """Protokollvariante der konfigurierten Dify-App."""

    CHAT = "chat"
    COMPLETION = "completion"
    WORKFLOW = "workflow"


class WebhookRequest(BaseModel):
    """Eingehende Nachricht am Webhook; ``user`` darf leer sein."""

    message: str = ""
    user: str = ""
    conversation_id: str = ""


class WebhookResponse(BaseModel):
    status: str
    message: str


class FileAttachment(BaseModel):
    """Verweis auf eine zuvor bei Dify hochgeladene Datei."""

    type: str
    transfer_method: str = "local_file"
    upload_file_id: str


class DifyBaseRequest(BaseModel):
    inputs: Dict[str, Any] = Field(default_factory=dict)
    user: str
    response_mode: str = RESPONSE_MODE_BLOCKING
    files: Optional[List[FileAttachment]] = None


class ChatRequest(DifyBaseRequest):
    query: str
    conversation_id: str = ""


class CompletionRequest(DifyBaseRequest):
    prompt: str


class WorkflowRequest(DifyBaseRequest):
    # Die eigentliche Anfrage steckt in ``inputs["query"]``.
    workflow_id: str = ""


class ChatResponse(BaseModel):
    answer: str = ""
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


class CompletionResponse(BaseModel):
    text: str = ""
    message_id: Optional[str] = None


class WorkflowResponse(BaseModel):
    data: Optional[Dict[str, Any]] = None
    workflow_run_id: Optional[str] = None


class DifyErrorResponse(BaseModel):
    """Fehlerkörper, den Dify bei Status != 2xx zurückgibt."""

    code: str = ""
    message: str = ""
    status: int = 0


class WeComResult(BaseModel):
    errcode: int = 0
    errmsg: str = ""
    media_id: str = ""
    type: str = ""
    created_at: str = ""


class NewsArticle(BaseModel):
    title: str
    description: str = ""
    url: str
    picurl: str = ""
