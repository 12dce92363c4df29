"""FastAPI-Einstiegspunkt für das Dify-WeCom Relay Gateway."""
import logging

import uvicorn
from fastapi import FastAPI

from app.core.config import load_settings
from app.core.conversation_store import InMemoryConversationStore
from app.core.converter import MessageConverter
from app.core.dify import DifyClient
from app.core.errors import ConfigurationError
from app.core.logging_setup import setup_logging
from app.core.wecom import WeComRobot

from app.routers import webhook as webhook_router

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

# Initialisierung der App
app = FastAPI(
    title="Dify-WeCom Relay Gateway",
    version=__version__,
    description="Relays webhook messages to Dify and delivers the replies to a WeCom group robot.",
)


@app.on_event("startup")
def startup_event() -> None:
    """Initialisiert alle Services beim Start der Anwendung.

    - Lädt die Settings (YAML + Env) und richtet das Logging ein.
    - Erstellt Dify-Client, WeCom-Roboter und Konversationsspeicher.
    - Verdrahtet alles im MessageConverter.
    """
    settings = load_settings()
    setup_logging(settings)
    logger.info(f"Dify-WeCom Relay Gateway version {__version__}")

    try:
        settings.validate_required()
    except ConfigurationError as exc:
        logger.warning(f"Incomplete configuration: {exc}")

    app.state.settings = settings
    app.state.dify = DifyClient(settings)
    app.state.robot = WeComRobot(settings)
    app.state.store = InMemoryConversationStore()
    app.state.converter = MessageConverter(
        app.state.dify, app.state.robot, app.state.store, settings
    )

    logger.info(f"Gateway initialised, Dify bot type: {settings.dify_bot_type}")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await app.state.dify.aclose()
    await app.state.robot.aclose()


# Router registrieren
app.include_router(webhook_router.router)


def run() -> None:
    """Startet den Server auf dem konfigurierten Port."""
    settings = load_settings()
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)


if __name__ == "__main__":
    run()
