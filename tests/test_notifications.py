import asyncio
import json
import math
import pathlib
import sys

import httpx
import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from neon_trace.config import Settings  # noqa: E402
from neon_trace.errors import ConfigurationError, TokenExchangeError  # noqa: E402
from neon_trace.integrations.credentials import CredentialCache  # noqa: E402
from neon_trace.integrations.notifications import (  # noqa: E402
    DispatchEngine,
    FcmLegacyProtocol,
    FcmV1Protocol,
    PushNotification,
    WindowedFanOut,
    chunked,
)


class StaticCredentials:
    def __init__(self, token: str = "access-token", error: Exception | None = None):
        self.token = token
        self.error = error
        self.calls = 0

    async def get_token(self) -> str:
        self.calls += 1
        if self.error:
            raise self.error
        return self.token


class FcmV1Recorder:
    """Endpoint ``messages:send`` falso que registra el orden de ejecución."""

    def __init__(self, failing=(), timeouts=()):
        self.failing = set(failing)
        self.timeouts = set(timeouts)
        self.requests: list[httpx.Request] = []
        self.events: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        token = json.loads(request.content)["message"]["token"]
        self.requests.append(request)
        self.events.append(("start", token))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.001)
        self.in_flight -= 1
        self.events.append(("end", token))
        if token in self.timeouts:
            raise httpx.ReadTimeout("timed out", request=request)
        if token in self.failing:
            return httpx.Response(404, json={"error": {"status": "NOT_FOUND"}})
        return httpx.Response(200, json={"name": f"projects/demo-project/messages/{token}"})


class LegacyRecorder:
    def __init__(self, broken_batches=(), summary=None):
        self.broken_batches = set(broken_batches)
        self.summary = summary
        self.requests: list[httpx.Request] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        index = len(self.requests)
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.001)
        self.in_flight -= 1
        if index in self.broken_batches:
            raise httpx.ConnectError("connection reset", request=request)
        ids = json.loads(request.content)["registration_ids"]
        if self.summary is not None:
            return httpx.Response(200, json=self.summary)
        # Un token inválido por lote.
        return httpx.Response(200, json={"success": len(ids) - 1, "failure": 1, "results": []})


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def tokens(count: int) -> list[str]:
    return [f"t{index:04d}" for index in range(count)]


NOTIFICATION = PushNotification(title="Ruta lista", body="Tu ruta más corta está disponible", data={"route_id": 42})


def test_modern_protocol_fans_out_in_sequential_windows_of_ten():
    recorder = FcmV1Recorder()
    engine = DispatchEngine(credentials=StaticCredentials(), project_id="demo-project", client=client_for(recorder))
    recipients = tokens(25)

    result = asyncio.run(engine.broadcast(NOTIFICATION, recipients))

    assert len(recorder.requests) == 25
    assert result.as_dict() == {"ok": True, "sent": 25, "failed": 0, "total": 25, "protocol": "fcm-v1"}
    assert recorder.max_in_flight <= 10

    # Ninguna petición de la ventana k+1 arranca antes de que terminen todas las de la ventana k.
    windows = chunked(recipients, 10)
    assert len(windows) == math.ceil(25 / 10)
    for previous, current in zip(windows, windows[1:]):
        last_end = max(recorder.events.index(("end", token)) for token in previous)
        first_start = min(recorder.events.index(("start", token)) for token in current)
        assert first_start > last_end


def test_modern_protocol_counts_failures_without_aborting():
    recorder = FcmV1Recorder(failing={"t0003"}, timeouts={"t0011"})
    engine = DispatchEngine(credentials=StaticCredentials(), project_id="demo-project", client=client_for(recorder))

    result = asyncio.run(engine.broadcast(NOTIFICATION, tokens(15)))

    assert len(recorder.requests) == 15
    assert result.sent == 13
    assert result.failed == 2
    assert result.sent + result.failed == result.total == 15


def test_modern_message_format_and_bearer_header():
    recorder = FcmV1Recorder()
    credentials = StaticCredentials(token="ya29.token")
    engine = DispatchEngine(credentials=credentials, project_id="demo-project", client=client_for(recorder))

    asyncio.run(engine.broadcast(NOTIFICATION, ["device-token"]))

    request = recorder.requests[0]
    assert request.url.path == "/v1/projects/demo-project/messages:send"
    assert request.headers["authorization"] == "Bearer ya29.token"
    assert json.loads(request.content) == {
        "message": {
            "token": "device-token",
            "notification": {"title": "Ruta lista", "body": "Tu ruta más corta está disponible"},
            "data": {"route_id": "42"},
        }
    }
    assert credentials.calls == 1


def test_modern_message_omits_empty_data():
    protocol = FcmV1Protocol(StaticCredentials(), "demo-project")

    message = protocol.build_message(PushNotification(title="Hola", body="Mundo"), "abc")

    assert message == {"message": {"token": "abc", "notification": {"title": "Hola", "body": "Mundo"}}}


def test_modern_protocol_preferred_over_legacy():
    recorder = FcmV1Recorder()
    engine = DispatchEngine(
        credentials=StaticCredentials(),
        project_id="demo-project",
        server_key="legacy-key",
        client=client_for(recorder),
    )

    assert isinstance(engine.select_protocol(), FcmV1Protocol)
    result = asyncio.run(engine.broadcast(NOTIFICATION, tokens(3)))
    assert result.protocol == "fcm-v1"


def test_token_failure_propagates_before_any_send():
    recorder = FcmV1Recorder()
    credentials = StaticCredentials(error=TokenExchangeError("sin token", status=400, body="invalid_grant"))
    engine = DispatchEngine(credentials=credentials, project_id="demo-project", client=client_for(recorder))

    with pytest.raises(TokenExchangeError):
        asyncio.run(engine.broadcast(NOTIFICATION, tokens(5)))
    assert recorder.requests == []


def test_modern_protocol_uses_cached_oauth_token(service_account, clock):
    exchanges: list[httpx.Request] = []
    sends: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            exchanges.append(request)
            return httpx.Response(200, json={"access_token": "ya29.cached", "expires_in": 3600})
        sends.append(request)
        return httpx.Response(200, json={"name": "projects/demo-project/messages/1"})

    client = client_for(handler)
    credentials = CredentialCache(lambda: service_account, client=client, clock=clock)
    engine = DispatchEngine(credentials=credentials, project_id="demo-project", client=client)

    async def run_flow():
        await engine.broadcast(NOTIFICATION, tokens(12))
        await engine.broadcast(NOTIFICATION, tokens(4))

    asyncio.run(run_flow())

    assert len(exchanges) == 1
    assert len(sends) == 16
    assert {request.headers["authorization"] for request in sends} == {"Bearer ya29.cached"}


def test_legacy_protocol_sends_sequential_batches_of_900():
    recorder = LegacyRecorder()
    engine = DispatchEngine(server_key="legacy-key", client=client_for(recorder))
    recipients = tokens(1901)

    result = asyncio.run(engine.broadcast(NOTIFICATION, recipients))

    assert len(recorder.requests) == math.ceil(1901 / 900) == 3
    sizes = [len(json.loads(request.content)["registration_ids"]) for request in recorder.requests]
    assert sizes == [900, 900, 101]
    assert recorder.max_in_flight == 1
    assert result.sent == 1898
    assert result.failed == 3
    assert result.sent + result.failed == 1901

    first = recorder.requests[0]
    assert str(first.url) == "https://fcm.googleapis.com/fcm/send"
    assert first.headers["authorization"] == "key=legacy-key"
    body = json.loads(first.content)
    assert body["notification"] == {"title": "Ruta lista", "body": "Tu ruta más corta está disponible"}
    assert body["data"] == {"route_id": 42}
    assert body["registration_ids"][0] == "t0000"


def test_legacy_transport_failure_counts_whole_batch():
    recorder = LegacyRecorder(broken_batches={1})
    engine = DispatchEngine(server_key="legacy-key", client=client_for(recorder))

    result = asyncio.run(engine.broadcast(NOTIFICATION, tokens(1000)))

    assert len(recorder.requests) == 2
    assert result.sent == 899
    assert result.failed == 1 + 100


def test_legacy_summary_without_counts_leaves_gap():
    recorder = LegacyRecorder(summary={"multicast_id": 1})
    engine = DispatchEngine(server_key="legacy-key", client=client_for(recorder))

    result = asyncio.run(engine.broadcast(NOTIFICATION, tokens(10)))

    assert result.sent + result.failed <= result.total
    assert result.total == 10


@pytest.mark.parametrize("summary", [{"success": "n/a", "failure": 0}, {"success": [1], "failure": 0}])
def test_legacy_unparsable_counts_fail_only_that_batch(summary):
    recorder = LegacyRecorder(summary=summary)
    engine = DispatchEngine(server_key="legacy-key", batch_size=2, client=client_for(recorder))

    result = asyncio.run(engine.broadcast(NOTIFICATION, tokens(3)))

    assert len(recorder.requests) == 2
    assert (result.sent, result.failed, result.total) == (0, 3, 3)


def test_legacy_over_reported_counts_are_clamped_to_batch():
    recorder = LegacyRecorder(summary={"success": 5000, "failure": 7})
    engine = DispatchEngine(server_key="legacy-key", client=client_for(recorder))

    result = asyncio.run(engine.broadcast(NOTIFICATION, tokens(2)))

    assert (result.sent, result.failed, result.total) == (2, 0, 2)


def test_legacy_failures_are_clamped_to_remaining_tokens():
    recorder = LegacyRecorder(summary={"success": 1, "failure": 9})
    engine = DispatchEngine(server_key="legacy-key", client=client_for(recorder))

    result = asyncio.run(engine.broadcast(NOTIFICATION, tokens(2)))

    assert (result.sent, result.failed) == (1, 1)
    assert result.sent + result.failed <= result.total


def test_legacy_error_status_counts_whole_batch():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="Unauthorized")

    engine = DispatchEngine(server_key="bad-key", client=client_for(handler))

    result = asyncio.run(engine.broadcast(NOTIFICATION, tokens(7)))

    assert (result.sent, result.failed, result.total) == (0, 7, 7)


def test_unconfigured_broadcast_makes_no_requests():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={})

    engine = DispatchEngine(client=client_for(handler))

    with pytest.raises(ConfigurationError, match="missing delivery credentials"):
        asyncio.run(engine.broadcast(NOTIFICATION, tokens(3)))
    assert requests == []


def test_project_id_without_credentials_is_not_modern():
    engine = DispatchEngine(project_id="demo-project", server_key="legacy-key")

    assert isinstance(engine.select_protocol(), FcmLegacyProtocol)


def test_empty_recipient_list_sends_nothing():
    recorder = LegacyRecorder()
    engine = DispatchEngine(server_key="legacy-key", client=client_for(recorder))

    result = asyncio.run(engine.broadcast(NOTIFICATION, []))

    assert result.as_dict()["total"] == 0
    assert recorder.requests == []


def test_from_settings_selects_protocol(service_account_info):
    modern = DispatchEngine.from_settings(Settings(service_account_json=json.dumps(service_account_info)))
    legacy = DispatchEngine.from_settings(Settings(fcm_server_key="legacy-key"))
    broken = DispatchEngine.from_settings(Settings(service_account_json="{oops", fcm_server_key="legacy-key"))

    assert isinstance(modern.select_protocol(), FcmV1Protocol)
    assert modern.select_protocol().project_id == "demo-project"
    assert isinstance(legacy.select_protocol(), FcmLegacyProtocol)
    # Sin project_id derivable no se puede usar HTTP v1.
    assert isinstance(broken.select_protocol(), FcmLegacyProtocol)
    with pytest.raises(ConfigurationError):
        DispatchEngine.from_settings(Settings()).select_protocol()


def test_windowed_fan_out_bound_is_a_parameter():
    started: list[int] = []
    finished: list[int] = []
    peak = 0

    async def worker(item: int) -> int:
        nonlocal peak
        started.append(item)
        peak = max(peak, len(started) - len(finished))
        await asyncio.sleep(0.001)
        finished.append(item)
        return item * 2

    results = asyncio.run(WindowedFanOut(concurrency=3).run(list(range(7)), worker))

    assert results == [0, 2, 4, 6, 8, 10, 12]
    assert peak <= 3


def test_windowed_fan_out_rejects_non_positive_bound():
    with pytest.raises(ValueError):
        WindowedFanOut(concurrency=0)
