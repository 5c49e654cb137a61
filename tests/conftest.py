import pathlib
import sys

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from neon_trace.integrations.credentials import ServiceAccount  # noqa: E402


class FakeClock:
    """Reloj manual en segundos epoch."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(scope="session")
def rsa_keys() -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def service_account_info(rsa_keys) -> dict:
    return {
        "type": "service_account",
        "project_id": "demo-project",
        "client_email": "push@demo-project.iam.gserviceaccount.com",
        "private_key": rsa_keys[0],
        "token_uri": "https://oauth2.googleapis.com/token",
    }


@pytest.fixture
def service_account(service_account_info) -> ServiceAccount:
    return ServiceAccount.from_info(service_account_info)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
