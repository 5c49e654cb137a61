"""Credenciales OAuth2 para FCM HTTP v1 (flujo JWT-bearer).

Se firma una aserción RS256 con la clave privada de la cuenta de servicio
usando python-jose y se intercambia en el endpoint de tokens de Google. El
token resultante se cachea hasta que le queden menos de cinco minutos de
vida.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from ..config import Settings
from ..errors import ConfigurationError, TokenExchangeError, TransportFailure
from ..observability import record_token_refresh


logger = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
MESSAGING_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ALGORITHM = "RS256"
ASSERTION_LIFETIME_SECONDS = 3600
REFRESH_MARGIN_SECONDS = 300


@dataclass
class ServiceAccount:
    """Identidad de servicio necesaria para firmar aserciones."""

    client_email: str
    private_key: str
    project_id: str | None = None
    token_uri: str = TOKEN_URI

    @classmethod
    def from_info(cls, info: dict[str, Any]) -> "ServiceAccount":
        client_email = info.get("client_email")
        private_key = info.get("private_key")
        if not client_email or not private_key:
            raise ConfigurationError("Cuenta de servicio sin client_email o private_key")
        return cls(
            client_email=str(client_email),
            # Los secretos montados como variable suelen llegar con "\n" escapados.
            private_key=str(private_key).replace("\\n", "\n"),
            project_id=info.get("project_id"),
            token_uri=str(info.get("token_uri") or TOKEN_URI),
        )


@dataclass
class Credential:
    token: str
    expires_at_ms: int

    def is_fresh(self, now_ms: int) -> bool:
        return self.expires_at_ms - now_ms > REFRESH_MARGIN_SECONDS * 1000


def build_assertion_claims(account: ServiceAccount, now: int) -> dict[str, Any]:
    return {
        "iss": account.client_email,
        "scope": MESSAGING_SCOPE,
        "aud": account.token_uri,
        "iat": now,
        "exp": now + ASSERTION_LIFETIME_SECONDS,
    }


def sign_assertion(claims: dict[str, Any], private_key: str) -> str:
    """Firma las claims como JWS compacto ``header.claims.firma``."""

    try:
        return jwt.encode(claims, private_key, algorithm=ALGORITHM)
    except JOSEError as exc:
        raise ConfigurationError(f"Clave privada de la cuenta de servicio inválida: {exc}") from exc


class CredentialCache:
    """Token de acceso cacheado con renovación perezosa.

    ``loader`` devuelve la :class:`ServiceAccount` y solo se invoca al
    renovar, de modo que una configuración ausente se detecta en el primer
    ``get_token`` que la necesite. ``clock`` devuelve segundos epoch y se
    sustituye en pruebas.
    """

    def __init__(
        self,
        loader: Callable[[], ServiceAccount],
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
        timeout: float = 20.0,
    ) -> None:
        self._loader = loader
        self._client = client
        self._clock = clock
        self.timeout = timeout
        self._credential: Credential | None = None
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> "CredentialCache":
        def loader() -> ServiceAccount:
            return ServiceAccount.from_info(settings.read_service_account_info())

        return cls(loader, client=client, timeout=settings.request_timeout)

    @property
    def credential(self) -> Credential | None:
        return self._credential

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def get_token(self) -> str:
        cached = self._credential
        if cached and cached.is_fresh(self._now_ms()):
            return cached.token

        async with self._refresh_lock:
            # Otro llamador pudo renovar mientras esperábamos el lock.
            cached = self._credential
            if cached and cached.is_fresh(self._now_ms()):
                return cached.token
            self._credential = await self._refresh()
            return self._credential.token

    def invalidate(self) -> None:
        self._credential = None

    async def _refresh(self) -> Credential:
        account = self._loader()
        now = int(self._clock())
        assertion = sign_assertion(build_assertion_claims(account, now), account.private_key)

        async with self._client_scope() as client:
            try:
                response = await client.post(
                    account.token_uri,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    timeout=self.timeout,
                )
            except httpx.TransportError as exc:
                record_token_refresh("transport_error")
                raise TransportFailure(f"Error de red al obtener token OAuth2: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not response.is_success or not access_token:
            record_token_refresh("rejected")
            raise TokenExchangeError(
                f"El endpoint de tokens no devolvió access_token ({response.status_code})",
                status=response.status_code,
                body=response.text,
            )

        try:
            expires_in = int(payload.get("expires_in") or ASSERTION_LIFETIME_SECONDS)
        except (TypeError, ValueError) as exc:
            record_token_refresh("rejected")
            raise TokenExchangeError(
                f"expires_in inválido en la respuesta de tokens: {payload.get('expires_in')!r}",
                status=response.status_code,
                body=response.text,
            ) from exc
        record_token_refresh("ok")
        logger.info("Token OAuth2 renovado para %s (expira en %ss)", account.client_email, expires_in)
        return Credential(token=str(access_token), expires_at_ms=self._now_ms() + expires_in * 1000)

    @contextlib.asynccontextmanager
    async def _client_scope(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client
