"""Cliente de rutas sobre openrouteservice (ORS).

Se piden hasta tres alternativas y se elige la de menor distancia. Algunos
perfiles de ORS rechazan ``alternative_routes`` con un 400; en ese caso se
reintenta una única vez sin ``options``.
"""

from __future__ import annotations

import contextlib
import logging
import math
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, AsyncIterator
from urllib.parse import quote

import httpx

from ..config import DEFAULT_ORS_BASE_URL, Settings
from ..errors import ConfigurationError, InvalidCoordinateError, NoRouteError, ProviderRejected, TransportFailure
from ..observability import record_route_request


logger = logging.getLogger(__name__)

ALTERNATIVES_REQUESTED = 3
SHARE_FACTOR = 0.6
SELECTION_ALGORITHM = "ORS-alternatives+selection"


@dataclass(frozen=True)
class LatLng:
    lat: float
    lng: float

    def as_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass
class RouteCandidate:
    """Una de las rutas alternativas devueltas por el proveedor."""

    geometry: list[tuple[float, float]]
    distance: float | None = None
    duration: float | None = None

    @classmethod
    def from_feature(cls, feature: Mapping[str, Any]) -> "RouteCandidate":
        summary = (feature.get("properties") or {}).get("summary") or {}
        coordinates = (feature.get("geometry") or {}).get("coordinates") or []
        # GeoJSON viene en orden [lng, lat].
        geometry = [(point[1], point[0]) for point in coordinates]
        return cls(geometry=geometry, distance=summary.get("distance"), duration=summary.get("duration"))

    @property
    def sort_distance(self) -> float:
        return self.distance if self.distance is not None else math.inf


@dataclass
class RouteResult:
    coordinates: list[LatLng]
    distance: float | None
    duration: float | None
    paths_analyzed: int
    steps: list[str]
    origin: LatLng
    destination: LatLng
    profile: str
    used_fallback: bool = False
    elapsed_ms: int = 0

    def to_response(self) -> dict[str, Any]:
        return {
            "route": {
                "coordinates": [point.as_dict() for point in self.coordinates],
                "distance": self.distance,
                "duration": self.duration,
            },
            "alternatives": self.paths_analyzed,
            "analysis": {
                "steps": self.steps,
                "pathsAnalyzed": self.paths_analyzed,
                "algorithm": SELECTION_ALGORITHM,
            },
            "waypoints": {"origin": self.origin.as_dict(), "destination": self.destination.as_dict()},
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validated(lat: float, lng: float, raw: Any) -> LatLng:
    if math.isnan(lat) or math.isnan(lng) or abs(lat) > 90 or abs(lng) > 180:
        raise InvalidCoordinateError(f"invalid coordinate: {raw!r}")
    return LatLng(lat=float(lat), lng=float(lng))


def coerce_latlng(value: Any) -> LatLng:
    """Normaliza ``{"lat", "lng"}`` o un par ``[a, b]`` a :class:`LatLng`.

    En pares se asume ``[lat, lng]`` si ``|a| <= 90`` y ``|b| <= 180``; si
    no, ``[lng, lat]``. Un par como ``[10, 20]`` es ambiguo y se queda como
    ``[lat, lng]``.
    """

    if isinstance(value, LatLng):
        return _validated(value.lat, value.lng, value)
    if isinstance(value, Mapping):
        lat, lng = value.get("lat"), value.get("lng")
        if _is_number(lat) and _is_number(lng):
            return _validated(lat, lng, value)
        raise InvalidCoordinateError(f"invalid coordinate: {value!r}")
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)) and len(value) >= 2:
        if isinstance(value[0], bool) or isinstance(value[1], bool):
            raise InvalidCoordinateError(f"invalid coordinate: {value!r}")
        try:
            a, b = float(value[0]), float(value[1])
        except (TypeError, ValueError) as exc:
            raise InvalidCoordinateError(f"invalid coordinate: {value!r}") from exc
        if abs(a) <= 90 and abs(b) <= 180:
            return _validated(a, b, value)
        return _validated(b, a, value)
    raise InvalidCoordinateError(f"invalid coordinate: {value!r}")


def select_shortest(candidates: Sequence[RouteCandidate]) -> RouteCandidate:
    """Candidato de menor distancia; sin distancia cuenta como infinito."""

    if not candidates:
        raise NoRouteError("No route returned")
    return min(candidates, key=lambda candidate: candidate.sort_distance)


class RouteRequestState(StrEnum):
    REQUESTING = "requesting"
    REJECTED_SHAPE = "rejected_shape"
    RETRYING_PLAIN = "retrying_plain"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ShapeRetryPolicy:
    """Permite una sola transición ``REJECTED_SHAPE -> RETRYING_PLAIN``."""

    rejected_status: int = 400
    max_retries: int = 1
    retries: int = field(default=0, init=False)

    def next_state(self, state: RouteRequestState, status_code: int) -> RouteRequestState:
        if 200 <= status_code < 300:
            return RouteRequestState.DONE
        if (
            state is RouteRequestState.REQUESTING
            and status_code == self.rejected_status
            and self.retries < self.max_retries
        ):
            return RouteRequestState.REJECTED_SHAPE
        return RouteRequestState.FAILED

    def start_retry(self) -> RouteRequestState:
        self.retries += 1
        return RouteRequestState.RETRYING_PLAIN


def build_directions_body(origin: LatLng, destination: LatLng, with_alternatives: bool = True) -> dict[str, Any]:
    body: dict[str, Any] = {
        "coordinates": [[origin.lng, origin.lat], [destination.lng, destination.lat]],
        "instructions": False,
    }
    if with_alternatives:
        body["options"] = {
            "alternative_routes": {"target_count": ALTERNATIVES_REQUESTED, "share_factor": SHARE_FACTOR}
        }
    return body


class RouteResolver:
    """Resuelve la ruta más corta entre dos puntos contra ORS."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_ORS_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = 20.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> "RouteResolver":
        return cls(settings.ors_api_key, base_url=settings.ors_base_url, client=client, timeout=settings.request_timeout)

    def directions_url(self, profile: str) -> str:
        return f"{self.base_url}/v2/directions/{quote(profile, safe='')}/geojson"

    async def resolve(self, origin: Any, destination: Any, profile: str = "driving-car") -> RouteResult:
        if not self.api_key:
            raise ConfigurationError("Server missing ORS_API_KEY")
        if origin is None or destination is None:
            raise InvalidCoordinateError("origin/destination required")
        a = coerce_latlng(origin)
        b = coerce_latlng(destination)

        started = time.perf_counter()
        payload, used_fallback = await self._request_with_policy(a, b, profile)

        features = (payload.get("features") or []) if isinstance(payload, dict) else []
        candidates = [RouteCandidate.from_feature(feature) for feature in features]
        if not candidates:
            record_route_request("no_route")
            raise NoRouteError("No route returned")
        best = select_shortest(candidates)

        steps = [
            f"origin=({a.lat:.5f},{a.lng:.5f})",
            f"destination=({b.lat:.5f},{b.lng:.5f})",
            f"profile={profile}",
            f"alternatives_requested={ALTERNATIVES_REQUESTED}",
        ]
        if used_fallback:
            steps.append("fallback=plain_request")

        record_route_request("fallback" if used_fallback else "ok")
        return RouteResult(
            coordinates=[LatLng(lat=lat, lng=lng) for lat, lng in best.geometry],
            distance=best.distance,
            duration=best.duration,
            paths_analyzed=len(candidates),
            steps=steps,
            origin=a,
            destination=b,
            profile=profile,
            used_fallback=used_fallback,
            elapsed_ms=int((time.perf_counter() - started) * 1000),
        )

    async def _request_with_policy(self, origin: LatLng, destination: LatLng, profile: str) -> tuple[Any, bool]:
        policy = ShapeRetryPolicy()
        state = RouteRequestState.REQUESTING
        body = build_directions_body(origin, destination, with_alternatives=True)

        async with self._client_scope() as client:
            while True:
                response = await self._post(client, profile, body)
                state = policy.next_state(state, response.status_code)
                if state is RouteRequestState.DONE:
                    break
                if state is RouteRequestState.REJECTED_SHAPE:
                    logger.info("ORS rechazó alternative_routes (400); reintentando sin options")
                    state = policy.start_retry()
                    body = build_directions_body(origin, destination, with_alternatives=False)
                    continue
                record_route_request("rejected")
                raise ProviderRejected(
                    f"ORS respondió {response.status_code}",
                    status=response.status_code,
                    body=response.text,
                )

        try:
            return response.json(), policy.retries > 0
        except ValueError as exc:
            raise ProviderRejected("ORS devolvió un cuerpo no JSON", status=response.status_code, body=response.text) from exc

    async def _post(self, client: httpx.AsyncClient, profile: str, body: dict[str, Any]) -> httpx.Response:
        try:
            return await client.post(
                self.directions_url(profile),
                json=body,
                headers={"Authorization": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TransportError as exc:
            record_route_request("transport")
            raise TransportFailure(f"Error de red hacia ORS: {exc}") from exc

    @contextlib.asynccontextmanager
    async def _client_scope(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client
