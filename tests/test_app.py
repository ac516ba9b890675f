import json

import httpx
import pytest
from fastapi.testclient import TestClient

from netatmo_exporter.app import create_app
from netatmo_exporter.config import Config
from netatmo_exporter.netatmo import NetatmoClient, Token

from helpers import NOW, FakeClock, InlineExecutor

def make_config(**overrides) -> Config:
    values = dict(
        host="127.0.0.1",
        port=9210,
        external_url="http://127.0.0.1:9210",
        log_level="INFO",
        refresh_interval=60.0,
        stale_duration=300.0,
        token_file="",
        debug_handlers=False,
        client_id="id",
        client_secret="secret",
    )
    values.update(overrides)
    return Config(**values)

def api_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/getstationsdata":
        body = {
            "devices": [
                {
                    "_id": "70:ee:50:00:00:01",
                    "module_name": "Indoor",
                    "dashboard_data": {"time_utc": int(NOW - 10), "Temperature": 21.5, "Humidity": 55},
                }
            ]
        }
        return httpx.Response(200, json={"body": body})
    if request.url.path == "/api/gethomecoachsdata":
        return httpx.Response(200, json={"body": {"devices": []}})
    return httpx.Response(404)

@pytest.fixture
def netatmo_client():
    http = httpx.Client(transport=httpx.MockTransport(api_handler), base_url="https://api.netatmo.test")
    return NetatmoClient("id", "secret", http=http, clock=FakeClock())

def make_test_client(netatmo_client, **overrides) -> TestClient:
    app = create_app(make_config(**overrides), netatmo_client, clock=FakeClock(), executor=InlineExecutor())
    return TestClient(app)

def test_metrics_endpoint(netatmo_client):
    netatmo_client.init_with_token(Token(access_token="a", refresh_token="r", expiry=NOW + 3600))

    with make_test_client(netatmo_client) as client:
        r = client.get("/metrics")

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    text = r.text
    assert "netatmo_up 1.0" in text
    assert 'netatmo_aircare_temperature_celsius{module="Indoor",station="Indoor"} 21.5' in text
    assert 'netatmo_aircare_humidity_percent{module="Indoor",station="Indoor"} 55.0' in text
    assert "netatmo_token_authenticated 1.0" in text

def test_metrics_without_token_still_succeeds(netatmo_client):
    with make_test_client(netatmo_client) as client:
        r = client.get("/metrics")

    assert r.status_code == 200
    assert "netatmo_up 0.0" in r.text
    assert "netatmo_cache_updated_time 0.0" in r.text
    assert 'netatmo_aircare_' not in r.text
    assert "netatmo_token_authenticated 0.0" in r.text

def test_version(netatmo_client):
    with make_test_client(netatmo_client) as client:
        r = client.get("/version")

    assert r.status_code == 200
    assert r.json()["exporter"] == "netatmo-exporter"

def test_home_reports_auth_state(netatmo_client):
    with make_test_client(netatmo_client) as client:
        assert client.get("/").json()["token"] == {"authenticated": False}

        netatmo_client.init_with_token(Token(access_token="a", refresh_token="r", expiry=NOW + 3600))
        token = client.get("/").json()["token"]

    assert token["authenticated"] is True
    assert token["valid"] is True

def test_set_token(netatmo_client):
    with make_test_client(netatmo_client) as client:
        r = client.post("/auth/settoken", json={"refresh_token": "manual"})

    assert r.status_code == 200
    token = netatmo_client.current_token()
    assert token.refresh_token == "manual"
    assert token.access_token == ""

def test_set_token_rejects_blank(netatmo_client):
    with make_test_client(netatmo_client) as client:
        r = client.post("/auth/settoken", json={"refresh_token": "  "})

    assert r.status_code == 400

def test_debug_handlers_disabled_by_default(netatmo_client):
    with make_test_client(netatmo_client) as client:
        assert client.get("/debug/data").status_code == 404
        assert client.get("/debug/token").status_code == 404

def test_debug_handlers(netatmo_client):
    netatmo_client.init_with_token(Token(access_token="a", refresh_token="r", expiry=NOW + 3600))

    with make_test_client(netatmo_client, debug_handlers=True) as client:
        data = client.get("/debug/data")
        token = client.get("/debug/token")

    assert data.status_code == 200
    assert data.json()["bodies"][0]["devices"][0]["module_name"] == "Indoor"
    assert token.json()["has_refresh_token"] is True
    assert "access_token" not in token.json()

def test_debug_data_upstream_error(netatmo_client):
    with make_test_client(netatmo_client, debug_handlers=True) as client:
        r = client.get("/debug/data")

    assert r.status_code == 502

def test_token_file_restored_and_saved(tmp_path, netatmo_client):
    path = tmp_path / "token.json"
    path.write_text(json.dumps({"access_token": "a", "refresh_token": "r", "expiry": "2099-01-01T00:00:00Z"}))

    with make_test_client(netatmo_client, token_file=str(path)) as client:
        assert netatmo_client.current_token().refresh_token == "r"
        client.post("/auth/settoken", json={"refresh_token": "rotated"})

    saved = json.loads(path.read_text())
    assert saved["refresh_token"] == "rotated"
