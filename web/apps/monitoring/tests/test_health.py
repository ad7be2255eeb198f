import pytest


@pytest.mark.django_db
def test_health_reports_db_and_missing_gateway(client):
    r = client.get("/api/health/")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["components"]["db"]["ok"] is True
    assert body["components"]["gateway"]["ok"] is False


@pytest.mark.django_db
def test_health_sees_active_gateway(client, gateway):
    r = client.get("/api/health/")
    assert r.json()["components"]["gateway"] == {"ok": True, "provider": "mercado_pago"}
