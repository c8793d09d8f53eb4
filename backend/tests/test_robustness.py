import importlib
import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from camarket.auth import create_access_token, verify_access_token
from camarket.models import ActorRef, Metadata
from camarket.services.database import load_metadata


def _reload_settings():
    sys.modules.pop("camarket.settings", None)
    return importlib.import_module("camarket.settings")


def test_settings_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "not-a-number")
    monkeypatch.setenv("ESCROW_HOLD_DAYS", "0")
    monkeypatch.setenv("DEFAULT_COMMISSION_PERCENTAGE", "250")
    monkeypatch.setenv("DB_BUSY_TIMEOUT_SECONDS", "-5")
    settings = _reload_settings()
    assert settings.TOKEN_TTL_HOURS == 24
    assert settings.ESCROW_HOLD_DAYS == 7
    assert settings.DEFAULT_COMMISSION_PERCENTAGE == Decimal("10.00")
    assert settings.DB_BUSY_TIMEOUT_SECONDS == 30


def test_settings_valid_env_is_used(monkeypatch):
    monkeypatch.setenv("ESCROW_HOLD_DAYS", "14")
    monkeypatch.setenv("DEFAULT_CURRENCY", " usd ")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, ,https://b.example")
    settings = _reload_settings()
    assert settings.ESCROW_HOLD_DAYS == 14
    assert settings.DEFAULT_CURRENCY == "USD"
    assert settings.parse_csv_env("CORS_ORIGINS", "*") == ["https://a.example", "https://b.example"]


def test_malformed_metadata_loads_as_empty():
    assert load_metadata("{bad") == Metadata()
    assert load_metadata('{"schema_version": 9, "values": {}}') == Metadata()
    assert load_metadata('{"schema_version": 1, "values": {"nested": {"a": 1}}}') == Metadata()
    assert load_metadata(None) == Metadata()
    assert load_metadata('{"schema_version": 1, "values": {"gstin": "27AAPFU0939F1ZV"}}').values == {
        "gstin": "27AAPFU0939F1ZV"
    }


def test_failing_event_handler_does_not_undo_transition(market, provider, offering):
    seen = []

    def broken(event):
        raise RuntimeError("dispatcher down")

    market.emitter.subscribe(broken)
    market.emitter.subscribe(seen.append)
    request = market.lifecycle.submit(user_id="user_1", ca_service_id=offering.id)
    accepted = market.lifecycle.accept(request.id, provider.id)

    assert accepted.status == "accepted"
    assert market.lifecycle.get(request.id).status == "accepted"
    assert [event.type for event in seen] == ["request.submitted", "request.accepted"]
    assert seen[1].actor_type == "provider"
    assert seen[1].payload["actor_id"] == provider.id


def test_tampered_token_is_rejected():
    token, _ = create_access_token(ActorRef.client("user_1"))
    assert verify_access_token(token) == ActorRef.client("user_1")
    payload, signature = token.split(".", 1)
    assert verify_access_token(f"{payload}x.{signature}") is None
    assert verify_access_token("garbage") is None
