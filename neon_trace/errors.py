"""Taxonomía de errores del núcleo de rutas y notificaciones.

Cada error lleva un ``code`` legible por máquinas, un ``status_code`` HTTP
sugerido y un diccionario ``details`` que la capa HTTP serializa tal cual.
"""

from __future__ import annotations

from typing import Any


class NeonTraceError(Exception):
    """Error base del servicio."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class ConfigurationError(NeonTraceError):
    """Falta una credencial o un parámetro de configuración."""

    code = "configuration_error"
    status_code = 500


class InvalidCoordinateError(NeonTraceError, ValueError):
    """Coordenada con forma o rango inválido (se rechaza antes de la red)."""

    code = "invalid_coordinate"
    status_code = 400


class ProviderRejected(NeonTraceError):
    """El proveedor remoto respondió con un estado de error."""

    code = "provider_rejected"
    status_code = 502

    def __init__(self, message: str, status: int, body: str = "") -> None:
        super().__init__(message, {"provider_status": status, "provider_body": body})
        self.provider_status = status
        self.body = body


class TokenExchangeError(ProviderRejected):
    """El endpoint OAuth2 no devolvió un ``access_token``."""

    code = "token_exchange_error"


class TransportFailure(NeonTraceError):
    """Timeout o error de conexión hacia un proveedor."""

    code = "transport_failure"
    status_code = 502


class NoRouteError(NeonTraceError):
    """El proveedor de rutas no devolvió candidatos utilizables."""

    code = "no_route"
    status_code = 502
