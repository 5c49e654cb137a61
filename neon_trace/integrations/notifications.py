"""Difusión de notificaciones push hacia FCM.

Se soportan dos protocolos excluyentes:

* ``fcm-v1``: un POST por token con bearer OAuth2, en ventanas de
  concurrencia acotada.
* ``legacy``: lotes de hasta 900 ``registration_ids`` enviados en serie con
  la clave estática del servidor.

Los fallos por destinatario o por lote se acumulan en el contador de
fallidos y nunca abortan la difusión.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence, TypeVar

import httpx

from ..config import Settings
from ..errors import ConfigurationError, NeonTraceError, ProviderRejected
from ..observability import record_push_delivery
from .credentials import CredentialCache


logger = logging.getLogger(__name__)

FCM_V1_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
FCM_LEGACY_URL = "https://fcm.googleapis.com/fcm/send"
DEFAULT_WINDOW_SIZE = 10
LEGACY_MAX_REGISTRATION_IDS = 900

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class PushNotification:
    """Mensaje a difundir."""

    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)

    def notification_block(self) -> dict[str, str]:
        return {"title": self.title, "body": self.body}


@dataclass
class DispatchResult:
    total: int
    sent: int = 0
    failed: int = 0
    protocol: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "sent": self.sent,
            "failed": self.failed,
            "total": self.total,
            "protocol": self.protocol,
        }


def chunked(items: Sequence[T], size: int) -> list[Sequence[T]]:
    if size < 1:
        raise ValueError("size debe ser positivo")
    return [items[start : start + size] for start in range(0, len(items), size)]


def token_preview(token: str) -> str:
    return f"{token[:10]}..." if token else "<vacío>"


class WindowedFanOut:
    """Pool de concurrencia acotada por ventanas.

    Como mucho ``concurrency`` corutinas están en vuelo; la ventana
    ``k + 1`` no arranca hasta que todas las de la ventana ``k`` terminan.
    """

    def __init__(self, concurrency: int = DEFAULT_WINDOW_SIZE) -> None:
        if concurrency < 1:
            raise ValueError("concurrency debe ser positivo")
        self.concurrency = concurrency

    async def run(self, items: Sequence[T], worker: Callable[[T], Awaitable[R]]) -> list[R]:
        results: list[R] = []
        for window in chunked(items, self.concurrency):
            results.extend(await asyncio.gather(*(worker(item) for item in window)))
        return results


class DeliveryProtocol:
    """Interfaz de protocolos de entrega."""

    name = "base"

    async def deliver(
        self, client: httpx.AsyncClient, notification: PushNotification, tokens: Sequence[str], result: DispatchResult
    ) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class FcmV1Protocol(DeliveryProtocol):
    """FCM HTTP v1: un mensaje por token con bearer OAuth2."""

    name = "fcm-v1"

    def __init__(
        self,
        credentials: CredentialCache,
        project_id: str,
        window_size: int = DEFAULT_WINDOW_SIZE,
        timeout: float = 20.0,
    ) -> None:
        self.credentials = credentials
        self.project_id = project_id
        self.pool = WindowedFanOut(window_size)
        self.timeout = timeout

    @property
    def url(self) -> str:
        return FCM_V1_URL.format(project_id=self.project_id)

    def build_message(self, notification: PushNotification, token: str) -> dict[str, Any]:
        message: dict[str, Any] = {"token": token, "notification": notification.notification_block()}
        if notification.data:
            # FCM v1 solo acepta valores de tipo string en ``data``.
            message["data"] = {key: str(value) for key, value in notification.data.items()}
        return {"message": message}

    async def deliver(
        self, client: httpx.AsyncClient, notification: PushNotification, tokens: Sequence[str], result: DispatchResult
    ) -> None:
        # Los errores del token OAuth2 no son por destinatario: se propagan.
        access_token = await self.credentials.get_token()
        headers = {"Authorization": f"Bearer {access_token}"}

        async def send_one(token: str) -> bool:
            try:
                response = await client.post(
                    self.url,
                    json=self.build_message(notification, token),
                    headers=headers,
                    timeout=self.timeout,
                )
                if not response.is_success:
                    raise ProviderRejected("FCM rechazó el mensaje", status=response.status_code, body=response.text)
            except (httpx.HTTPError, NeonTraceError) as exc:
                logger.warning("Fallo push fcm-v1 para %s: %s", token_preview(token), exc)
                return False
            return True

        outcomes = await self.pool.run(tokens, send_one)
        delivered = sum(1 for ok in outcomes if ok)
        result.sent += delivered
        result.failed += len(outcomes) - delivered


class FcmLegacyProtocol(DeliveryProtocol):
    """API legacy ``/fcm/send`` con clave de servidor y lotes en serie."""

    name = "legacy"

    def __init__(self, server_key: str, batch_size: int = LEGACY_MAX_REGISTRATION_IDS, timeout: float = 20.0) -> None:
        self.server_key = server_key
        self.batch_size = min(batch_size, LEGACY_MAX_REGISTRATION_IDS)
        self.timeout = timeout

    def build_payload(self, notification: PushNotification, batch: Sequence[str]) -> dict[str, Any]:
        return {
            "notification": notification.notification_block(),
            "data": notification.data or {},
            "registration_ids": list(batch),
        }

    async def deliver(
        self, client: httpx.AsyncClient, notification: PushNotification, tokens: Sequence[str], result: DispatchResult
    ) -> None:
        headers = {"Authorization": f"key={self.server_key}"}
        for index, batch in enumerate(chunked(tokens, self.batch_size)):
            try:
                response = await client.post(
                    FCM_LEGACY_URL,
                    json=self.build_payload(notification, batch),
                    headers=headers,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                summary = response.json()
                if not isinstance(summary, dict):
                    raise ValueError("respuesta legacy sin objeto JSON")
                success = int(summary.get("success") or 0)
                failure = int(summary.get("failure") or 0)
            except (httpx.HTTPError, ValueError, TypeError) as exc:
                logger.warning("Lote legacy %d (%d tokens) fallido: %s", index, len(batch), exc)
                result.failed += len(batch)
                continue
            # El proveedor no puede contabilizar más tokens de los enviados en el lote.
            sent = min(max(success, 0), len(batch))
            result.sent += sent
            result.failed += min(max(failure, 0), len(batch) - sent)


class DispatchEngine:
    """Selecciona protocolo y difunde un mensaje a muchos tokens."""

    def __init__(
        self,
        credentials: CredentialCache | None = None,
        project_id: str | None = None,
        server_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        window_size: int = DEFAULT_WINDOW_SIZE,
        batch_size: int = LEGACY_MAX_REGISTRATION_IDS,
        timeout: float = 20.0,
    ) -> None:
        self.credentials = credentials
        self.project_id = project_id
        self.server_key = server_key
        self._client = client
        self.window_size = window_size
        self.batch_size = batch_size
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> "DispatchEngine":
        credentials = CredentialCache.from_settings(settings, client=client) if settings.has_service_account else None
        return cls(
            credentials=credentials,
            project_id=settings.derive_project_id(),
            server_key=settings.fcm_server_key,
            client=client,
            window_size=settings.broadcast_window,
            batch_size=settings.legacy_batch_size,
            timeout=settings.request_timeout,
        )

    def select_protocol(self) -> DeliveryProtocol:
        if self.credentials is not None and self.project_id:
            return FcmV1Protocol(self.credentials, self.project_id, window_size=self.window_size, timeout=self.timeout)
        if self.server_key:
            return FcmLegacyProtocol(self.server_key, batch_size=self.batch_size, timeout=self.timeout)
        raise ConfigurationError("missing delivery credentials")

    async def broadcast(self, notification: PushNotification, tokens: Sequence[str]) -> DispatchResult:
        protocol = self.select_protocol()
        tokens = list(tokens)
        result = DispatchResult(total=len(tokens), protocol=protocol.name)
        if not tokens:
            return result

        logger.info("Difundiendo push vía %s a %d tokens", protocol.name, len(tokens))
        async with self._client_scope() as client:
            await protocol.deliver(client, notification, tokens, result)

        record_push_delivery(protocol.name, "sent", result.sent)
        record_push_delivery(protocol.name, "failed", result.failed)
        logger.info(
            "Difusión %s terminada: enviados=%d fallidos=%d total=%d",
            protocol.name,
            result.sent,
            result.failed,
            result.total,
        )
        return result

    @contextlib.asynccontextmanager
    async def _client_scope(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client
