"""Webhook-Router: nimmt Nachrichten (extern oder vom Scheduler) entgegen
und übergibt sie an die Nachrichten-Pipeline."""
import logging
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Header, HTTPException, Request, status

from app.core.errors import EmptyMessageError, RelayError
from app.core.models import WebhookRequest, WebhookResponse

router = APIRouter(prefix="/webhook", tags=["Webhook"])
logger = logging.getLogger(__name__)


def check_auth(request: Request, authorization: Optional[str]) -> None:
    """Prüft den Bearer-Token, falls die Authentifizierung aktiv ist."""
    config = request.app.state.settings
    if not config.enable_auth:
        return
    if not authorization:
        logger.warning("Webhook request without Authorization header")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    if authorization != f"Bearer {config.auth_token}":
        logger.warning("Webhook request with invalid token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


@router.post("", response_model=WebhookResponse)
async def handle_webhook(
    payload: WebhookRequest,
    request: Request,
    authorization: Optional[str] = Header(default=None),
):
    """Haupt-Endpunkt für eingehende Nachrichten.

    Pipeline:
    1) Token-Prüfung (optional).
    2) Fehlende Nutzerkennung wird durch eine neue UUID ersetzt.
    3) Übergabe an den MessageConverter (Dify -> WeCom).
    """
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Webhook request from {client_host}")
    check_auth(request, authorization)

    user = payload.user
    if not user:
        user = str(uuid4())
        logger.info(f"Empty user id, generated new user id: {user}")

    converter = request.app.state.converter
    try:
        await converter.convert_and_send(payload.message, user, payload.conversation_id)
    except EmptyMessageError as exc:
        logger.warning(f"Rejected empty webhook request: {exc}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RelayError as exc:
        logger.error(f"Failed to process message: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to process message: {exc}",
        ) from exc

    logger.info("Webhook request processed")
    return WebhookResponse(status="success", message="Nachricht wurde erfolgreich verarbeitet")
