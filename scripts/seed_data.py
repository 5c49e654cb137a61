"""Carga datos seed para desarrollo local.

Usa el backend elegido por el entorno (``DATABASE_URL``/``REDIS_URL``) y
registra un par de dispositivos de demo con tokens push y una ruta de
ejemplo en el historial.
"""

from datetime import datetime, timezone
import pathlib
import sys

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from neon_trace.api import DEVICES, ROUTE_LOGS  # noqa: E402
from neon_trace.store import store_from_env  # noqa: E402


DEMO_DEVICES = [
    {"device_id": "demo-android", "push_token": "demo-fcm-token-android", "platform": "android"},
    {"device_id": "demo-ios", "push_token": "demo-fcm-token-ios", "platform": "ios"},
]


def seed() -> None:
    store = store_from_env()
    now = datetime.now(timezone.utc).isoformat()

    for device in DEMO_DEVICES:
        if store.get(DEVICES, device["device_id"]):
            continue
        store.upsert(DEVICES, device["device_id"], {**device, "registeredAt": now, "updatedAt": now})

    if not store.count(ROUTE_LOGS):
        store.upsert(
            ROUTE_LOGS,
            "demo-route",
            {
                "origin": {"lat": 40.4168, "lng": -3.7038},
                "destination": {"lat": 40.4530, "lng": -3.6883},
                "profile": "driving-car",
                "pathsAnalyzed": 3,
                "chosen": {"distance": 5321.4, "duration": 812.0},
                "fallback": False,
                "createdAt": now,
                "t": 0,
            },
        )
        print("Datos de demo insertados")
    else:
        print("Datos de demo ya existentes; no se insertan duplicados")
    print(f"Backend {store.name}: {store.count(DEVICES)} dispositivos")


if __name__ == "__main__":
    seed()
