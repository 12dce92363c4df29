"""Fehlerhierarchie des Dify-WeCom Relay Gateways.

Alle Fehler der Pipeline erben von ``RelayError``. Der Webhook-Router
unterscheidet nur zwischen Aufruferfehlern (leere Anfrage) und allem anderen.
"""
from typing import Optional


class RelayError(Exception):
    """Basisklasse für alle Fehler der Nachrichten-Pipeline."""


class ConfigurationError(RelayError):
    """Fehlende Zugangsdaten, Base-URL oder ein unbekannter Bot-Typ."""


class EmptyMessageError(RelayError):
    """Weder Nachricht, Default-Prompt noch Anhang vorhanden."""


class TransportError(RelayError):
    """Verbindungsfehler, der auch nach allen Wiederholungen bestehen bleibt."""


class BackendProtocolError(RelayError):
    """Dify hat mit einem Fehlerstatus geantwortet oder ein Pflichtfeld fehlt."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        backend_message: Optional[str] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.backend_message = backend_message
        self.body = body


class RequestEncodeError(RelayError):
    """Eine Anfrage an Dify konnte nicht serialisiert werden."""


class ResponseDecodeError(RelayError):
    """Eine erfolgreiche Antwort ließ sich nicht in das erwartete Format lesen."""


class LocalIOError(RelayError):
    """Temporäre Datei konnte nicht angelegt oder beschrieben werden."""


class DeliveryError(RelayError):
    """Zustellung an den WeCom-Roboter ist fehlgeschlagen."""

    def __init__(self, message: str, errcode: Optional[int] = None) -> None:
        super().__init__(message)
        self.errcode = errcode


class RateLimitError(DeliveryError):
    """WeCom meldet eine Überschreitung des Sendelimits (errcode 45009)."""


class PipelineError(RelayError):
    """Kapselt einen Fehler der Pipeline und benennt die betroffene Stufe."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
