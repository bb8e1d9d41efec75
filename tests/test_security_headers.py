# tests/test_security_headers.py
import pytest

from tests.helpers.submissions import post_submission


def _assert_protective_headers(response):
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-XSS-Protection"] == "1; mode=block"


@pytest.mark.parametrize("path", ["/", "/view-data", "/statistics", "/export", "/api/submissions"])
def test_headers_on_every_route(client, path):
    r = client.get(path)
    assert r.status_code == 200
    _assert_protective_headers(r)


def test_headers_on_404(client):
    r = client.get("/does-not-exist")
    assert r.status_code == 404
    assert r.json() == {"error": "Endpoint not found"}
    _assert_protective_headers(r)


def test_wrong_method_is_404_not_405(client):
    r = client.post("/")
    assert r.status_code == 404
    assert r.json() == {"error": "Endpoint not found"}

    r = client.get("/submit")
    assert r.status_code == 404


def test_headers_on_403(client):
    r = post_submission(client, token="bad", username="Alice")
    assert r.status_code == 403
    _assert_protective_headers(r)


def test_headers_on_429(make_client):
    client = make_client(security={"maxRequestsPerMinute": 1, "blockSuspiciousIPs": False})
    assert client.get("/").status_code == 200

    r = client.get("/")
    assert r.status_code == 429
    _assert_protective_headers(r)


def test_form_is_not_cached(client):
    r = client.get("/")
    assert r.headers["Cache-Control"] == "no-store"


@pytest.mark.parametrize(
    "feature, path",
    [
        ("enableAPI", "/api/submissions"),
        ("enableExport", "/export"),
        ("enableStatistics", "/statistics"),
    ],
)
def test_disabled_feature_answers_404(make_client, feature, path):
    client = make_client(features={feature: False})
    r = client.get(path)
    assert r.status_code == 404
    assert r.json() == {"error": "Endpoint not found"}
    _assert_protective_headers(r)
