# tests/test_submit_and_csrf.py
import json

import app
from security import MAX_FIELD_LENGTH
from store import StoreError
from tests.helpers.submissions import fetch_form_token, post_submission


def test_form_embeds_fresh_64_hex_token(client):
    t1 = fetch_form_token(client)
    t2 = fetch_form_token(client)
    assert len(t1) == 64
    assert t1 != t2, "every render must carry a new token"


def test_form_page_is_html_with_hidden_autofill_fields(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/html")
    for name in ("username", "email", "phone", "cc-number", "pincode", "research_metadata"):
        assert f'name="{name}"' in r.text


def test_submit_with_valid_token_is_stored(client, store):
    before = len(store.load_all())

    r = post_submission(client, username="Alice", email="a@example.com")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["submissionId"]

    records = store.load_all()
    assert len(records) == before + 1
    rec = records[-1]
    assert rec.id == body["submissionId"]
    assert rec.form_fields["username"] == "Alice"
    assert rec.form_fields["email"] == "a@example.com"
    assert rec.client_address == "testclient"
    assert rec.user_agent == "testclient"


def test_submit_with_token_from_rendered_form(client, store):
    token = fetch_form_token(client)
    r = post_submission(client, token=token, username="Bob")
    assert r.status_code == 200
    assert store.load_all()[-1].form_fields == {"username": "Bob"}


def test_short_token_is_rejected_and_store_untouched(client, store):
    before = len(store.load_all())

    r = post_submission(client, token="0123456789", username="Alice", email="a@example.com")
    assert r.status_code == 403
    assert r.json() == {"error": "Security validation failed"}
    assert len(store.load_all()) == before


def test_missing_token_is_rejected(client, store):
    r = post_submission(client, token=None, username="Alice")
    assert r.status_code == 403
    assert store.load_all() == []


def test_csrf_can_be_disabled(make_client):
    client = make_client(security={"enableCSRF": False})
    r = post_submission(client, token=None, username="Alice")
    assert r.status_code == 200


def test_control_fields_are_not_stored_as_form_fields(client, store):
    r = post_submission(client, username="Alice", research_metadata=json.dumps({"screen": "1920x1080"}))
    assert r.status_code == 200

    rec = store.load_all()[-1]
    assert "csrf_token" not in rec.form_fields
    assert "research_metadata" not in rec.form_fields
    assert rec.research_metadata == {"screen": "1920x1080"}


def test_values_are_sanitized_before_storage(client, store):
    r = post_submission(
        client,
        username="<b>Alice</b>",
        address="x" * (MAX_FIELD_LENGTH + 250),
    )
    assert r.status_code == 200

    rec = store.load_all()[-1]
    assert rec.form_fields["username"] == "bAlice/b"
    assert len(rec.form_fields["address"]) == MAX_FIELD_LENGTH


def test_repeated_keys_are_kept_as_list(client, store):
    r = client.post(
        "/submit",
        data={"csrf_token": "a" * 64, "interest": ["books", "music"]},
    )
    assert r.status_code == 200
    assert store.load_all()[-1].form_fields["interest"] == ["books", "music"]


def test_repeated_keys_are_sanitized_and_scored_per_item(client, store):
    r = client.post(
        "/submit",
        data={"csrf_token": "a" * 64, "username": ["<b>x</b>", "javascript:alert(1)"]},
    )
    assert r.status_code == 200

    rec = store.load_all()[-1]
    assert rec.form_fields["username"] == ["bx/b", "javascript:alert(1)"]
    assert rec.flags.is_suspicious is True


def test_malformed_metadata_becomes_empty(client, store):
    r = post_submission(client, username="Alice", research_metadata="{not json")
    assert r.status_code == 200
    rec = store.load_all()[-1]
    assert rec.research_metadata == {}
    assert rec.flags.autofill_used is False


def test_non_object_metadata_becomes_empty(client, store):
    r = post_submission(client, username="Alice", research_metadata="[1, 2, 3]")
    assert r.status_code == 200
    assert store.load_all()[-1].research_metadata == {}


def test_autofill_flag_follows_metadata(client, store):
    meta = json.dumps({"autofillDetected": True, "fieldsFilled": 5})
    r = post_submission(client, username="Alice", research_metadata=meta)
    assert r.status_code == 200

    rec = store.load_all()[-1]
    assert rec.flags.autofill_used is True
    assert rec.research_metadata["fieldsFilled"] == 5


def test_submission_ids_are_unique(client, store):
    ids = set()
    for i in range(25):
        r = post_submission(client, username=f"user{i}")
        assert r.status_code == 200
        ids.add(r.json()["submissionId"])

    stored = [rec.id for rec in store.load_all()]
    assert len(ids) == 25
    assert len(stored) == len(set(stored)) == 25
    assert all(len(i) == 16 for i in stored)


def test_browser_post_gets_html_success_page(client):
    r = post_submission(client, username="Alice", headers={"Accept": "text/html,application/xhtml+xml"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/html")
    assert "Registration Successful" in r.text


def test_store_write_failure_returns_500(client, monkeypatch):
    def _boom(record):
        raise StoreError("disk full")

    monkeypatch.setattr(app.app.state.store, "append", _boom)

    r = post_submission(client, username="Alice")
    assert r.status_code == 500
    assert r.json() == {"error": "Failed to save submission"}
