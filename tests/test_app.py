import asyncio
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from app import create_app
from conftest import FakeSource
from quote_engine import Settings, build_engine
from quote_engine.cache.store import MemoryStore
from quote_engine.models import DataKind, FetchSuccess, QuoteRecord


def _engine(**overrides):
    source = FakeSource().on(DataKind.QUOTE, "AAPL", FetchSuccess(QuoteRecord(
        symbol="AAPL", price=178.72, change_percent=1.2, volume=1_000_000,
        fetched_at=datetime.now(), is_real=True,
    )))
    settings = Settings(alpha_vantage_api_key="demo", min_call_interval_s=0, **overrides)
    return asyncio.run(build_engine(settings, store=MemoryStore(), source=source))


@pytest.fixture
def client():
    with TestClient(create_app(_engine())) as c:
        yield c


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "healthy"
    assert res.json()["store"] == "memory"


def test_quote_live(client):
    res = client.get("/api/quote/aapl")
    assert res.status_code == 200
    body = res.json()
    assert body["symbol"] == "AAPL"
    assert body["source"] == "upstream"
    assert body["is_real"] is True
    assert body["data"]["price"] == 178.72


def test_quote_falls_back_to_synthetic(client):
    body = client.get("/api/quote/TSLA").json()
    assert body["source"] == "synthetic"
    assert body["is_real"] is False
    assert body["errors"] == ["upstream_error"]


def test_batch_quotes(client):
    res = client.get("/api/quotes", params={"symbols": "AAPL, tsla"})
    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 2
    assert body["symbols"] == ["AAPL", "TSLA"]
    assert body["data"]["AAPL"]["is_real"] is True


def test_batch_quotes_rejects_bad_input(client):
    assert client.get("/api/quotes", params={"symbols": " , "}).status_code == 400
    many = ",".join(f"S{i}" for i in range(51))
    assert client.get("/api/quotes", params={"symbols": many}).status_code == 400


def test_history_and_performance_chart(client):
    body = client.get("/api/history/SCT").json()
    assert len(body["data"]["points"]) == 30

    chart = client.get("/api/stock-performance/SCT").json()
    assert len(chart["labels"]) == 30
    assert len(chart["datasets"][0]["data"]) == 30
    assert chart["isMock"] is True
    assert chart["source"] == "cache"


def test_market_overview(client):
    body = client.get("/api/market-overview").json()
    assert [d["symbol"] for d in body["data"]] == ["AAPL", "TSLA", "BRK.B", "SCT"]
    assert "lastUpdated" in body


def test_budget_counts_calls(client):
    client.get("/api/quote/AAPL")
    body = client.get("/api/budget").json()
    assert body["call_count"] == 1
    assert body["daily_limit"] == 25


def test_unavailable_is_503():
    with TestClient(create_app(_engine(synthesize_on_miss=False))) as c:
        assert c.get("/api/history/TSLA").status_code == 503
        assert c.get("/api/stock-performance/TSLA").status_code == 503
        assert c.get("/api/quote/AAPL").status_code == 200


def test_blank_symbol_is_400(client):
    for path in ("/api/quote/%20", "/api/history/%20%20", "/api/stock-performance/%20"):
        res = client.get(path)
        assert res.status_code == 400, path
        assert res.json()["detail"] == "No symbol provided"
