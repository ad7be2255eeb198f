import os
import sys
from pathlib import Path

import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SANDBOX_WEBHOOK_SECRET"] = "sandbox-secret"

SERVICE_DIR = Path(__file__).resolve().parent
if str(SERVICE_DIR) not in sys.path:
    sys.path.insert(0, str(SERVICE_DIR))


@pytest.fixture
def api():
    from fastapi.testclient import TestClient

    import main
    from repo import Base, engine

    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    return TestClient(main.app, headers={"Authorization": "Bearer TEST-token"})


@pytest.fixture
def pix_body():
    return {
        "transaction_amount": 197.0,
        "currency_id": "BRL",
        "description": "Curso",
        "payment_method_id": "pix",
        "external_reference": "chk-0001",
        "notification_url": "https://shop.example.com/api/webhooks/mercadopago/",
        "payer": {"email": "maria@example.com", "first_name": "Maria", "last_name": "Silva"},
    }
