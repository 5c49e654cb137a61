"""Configuración leída de variables de entorno.

Las credenciales (clave de openrouteservice, cuenta de servicio de Firebase
o clave legacy de FCM) se inyectan desde el entorno para poder montarlas
desde Vault/Secrets Manager sin tocar el código.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigurationError


DEFAULT_ORS_BASE_URL = "https://api.openrouteservice.org"
DEFAULT_TIMEOUT_SECONDS = 20.0


@dataclass
class Settings:
    """Parámetros del servicio.

    ``FCM_SERVICE_ACCOUNT_JSON`` admite el documento JSON completo de la
    cuenta de servicio; ``GOOGLE_APPLICATION_CREDENTIALS`` apunta a un
    fichero con el mismo contenido. El primero tiene prioridad.
    """

    ors_api_key: str | None = None
    ors_base_url: str = DEFAULT_ORS_BASE_URL
    default_profile: str = "driving-car"
    service_account_json: str | None = None
    service_account_file: str | None = None
    fcm_project_id: str | None = None
    fcm_server_key: str | None = None
    database_url: str | None = None
    redis_url: str | None = None
    request_timeout: float = DEFAULT_TIMEOUT_SECONDS
    broadcast_window: int = 10
    legacy_batch_size: int = 900

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            ors_api_key=_env("ORS_API_KEY"),
            ors_base_url=_env("ORS_BASE_URL") or DEFAULT_ORS_BASE_URL,
            default_profile=_env("ORS_PROFILE") or "driving-car",
            service_account_json=_env("FCM_SERVICE_ACCOUNT_JSON"),
            service_account_file=_env("GOOGLE_APPLICATION_CREDENTIALS"),
            fcm_project_id=_env("FCM_PROJECT_ID"),
            fcm_server_key=_env("FCM_SERVER_KEY"),
            database_url=_env("DATABASE_URL"),
            redis_url=_env("REDIS_URL"),
            request_timeout=float(os.getenv("HTTP_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)),
        )

    @property
    def has_service_account(self) -> bool:
        return bool(self.service_account_json or self.service_account_file)

    def read_service_account_info(self) -> dict[str, Any]:
        """Devuelve el documento de la cuenta de servicio ya parseado."""

        if self.service_account_json:
            raw = self.service_account_json
        elif self.service_account_file:
            try:
                raw = Path(self.service_account_file).read_text(encoding="utf-8")
            except OSError as exc:
                raise ConfigurationError(f"No se pudo leer la cuenta de servicio: {exc}") from exc
        else:
            raise ConfigurationError("Cuenta de servicio de FCM no configurada")

        try:
            info = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError("Cuenta de servicio con JSON inválido") from exc
        if not isinstance(info, dict):
            raise ConfigurationError("Cuenta de servicio con formato inválido")
        return info

    def derive_project_id(self) -> str | None:
        """Proyecto de Firebase explícito o tomado de la cuenta de servicio."""

        if self.fcm_project_id:
            return self.fcm_project_id
        if not self.has_service_account:
            return None
        try:
            project_id = self.read_service_account_info().get("project_id")
        except ConfigurationError:
            return None
        return str(project_id) if project_id else None


def _env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None
