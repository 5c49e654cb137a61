import importlib
import importlib.util
import os
import time

from fastapi import FastAPI, Request
from prometheus_client import Counter, Histogram


ROUTE_REQUESTS = Counter(
    "neon_route_requests_total",
    "Solicitudes de ruta al proveedor por resultado.",
    ["outcome"],
)

PUSH_DELIVERIES = Counter(
    "neon_push_deliveries_total",
    "Notificaciones push entregadas o fallidas por protocolo.",
    ["protocol", "status"],
)

TOKEN_REFRESHES = Counter(
    "neon_oauth_token_refreshes_total",
    "Intercambios de aserción JWT por token de acceso.",
    ["status"],
)

API_LATENCY = Histogram(
    "neon_api_latency_seconds",
    "Latencia por handler FastAPI.",
    ["method", "path", "status_code"],
    buckets=(
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        20.0,
    ),
)


class Observability:
    """Configura tracing y la métrica de latencia de la API."""

    def __init__(self, app: FastAPI):
        self.app = app
        self._attach_latency_middleware()
        self._configure_tracing()

    def _configure_tracing(self) -> None:
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        if not endpoint:
            return

        if importlib.util.find_spec("opentelemetry.sdk.trace") is None:
            return

        trace_mod = importlib.import_module("opentelemetry.trace")
        exporter_mod = importlib.import_module(
            "opentelemetry.exporter.otlp.proto.http.trace_exporter"
        )
        resources_mod = importlib.import_module("opentelemetry.sdk.resources")
        sdk_trace = importlib.import_module("opentelemetry.sdk.trace")
        sdk_export = importlib.import_module("opentelemetry.sdk.trace.export")
        httpx_inst = importlib.import_module("opentelemetry.instrumentation.httpx")
        fastapi_inst = importlib.import_module("opentelemetry.instrumentation.fastapi")

        resource = resources_mod.Resource.create(
            {
                "service.name": os.getenv("OTEL_SERVICE_NAME", "neon-trace-api"),
                "service.instance.id": os.getenv("HOSTNAME", "local"),
            }
        )

        provider = sdk_trace.TracerProvider(resource=resource)
        span_exporter = exporter_mod.OTLPSpanExporter(
            endpoint=endpoint,
            timeout=int(os.getenv("OTEL_EXPORTER_OTLP_TIMEOUT", "10")),
        )
        provider.add_span_processor(sdk_export.BatchSpanProcessor(span_exporter))
        trace_mod.set_tracer_provider(provider)
        # Las llamadas salientes a ORS, OAuth2 y FCM usan httpx.
        httpx_inst.HTTPXClientInstrumentor().instrument()
        fastapi_inst.FastAPIInstrumentor.instrument_app(
            self.app, tracer_provider=provider
        )

    def _attach_latency_middleware(self) -> None:
        @self.app.middleware("http")
        async def record_latency(request: Request, call_next):  # type: ignore[arg-type]
            start = time.perf_counter()
            response = await call_next(request)
            elapsed = time.perf_counter() - start

            route_template = request.url.path
            route = request.scope.get("route")
            if route and getattr(route, "path", None):
                route_template = route.path

            API_LATENCY.labels(
                method=request.method,
                path=route_template,
                status_code=str(response.status_code),
            ).observe(elapsed)
            return response


def record_route_request(outcome: str) -> None:
    """Cuenta resoluciones de ruta (ok, fallback, rejected, no_route, transport)."""

    ROUTE_REQUESTS.labels(outcome=outcome).inc()


def record_push_delivery(protocol: str, status: str, count: int = 1) -> None:
    """Acumula entregas push por protocolo (fcm-v1/legacy) y estado."""

    if count:
        PUSH_DELIVERIES.labels(protocol=protocol, status=status).inc(count)


def record_token_refresh(status: str) -> None:
    TOKEN_REFRESHES.labels(status=status).inc()
