"""
Unit Tests for the HTTP API

Routes are exercised through FastAPI's TestClient. The lifespan is not run:
the broker, aggregator, session validator and credential store are replaced
with app.dependency_overrides, and exchange adapters are swapped by patching
app.main.create_adapter. The SSE endpoint is covered in test_premium_stream.py
since its stream only ends on client disconnect.

Run with:
    pytest tests/unit/test_api.py -v
"""

from typing import Optional

import pytest
from fastapi.testclient import TestClient

import app.main as main
from app.dependencies import get_aggregator, get_broker, get_credentials_lookup, get_session_validator
from core.collaborators import AuthenticatedUser
from core.exceptions import (
    InvalidInterval,
    SymbolNotFound,
    UnsupportedExchange,
    UnsupportedOperation,
    UpstreamAuthError,
    UpstreamUnavailable,
)
from core.exchange_interface import ExchangeAdapter
from core.schemas import (
    AggregatedCandles,
    Balance,
    Candle,
    ExchangeCredentials,
    PositionInfo,
    PremiumCandle,
    TickerSnapshot,
)


# ============================================
# Test Doubles
# ============================================

class FakeAggregator:
    def __init__(self, result: Optional[AggregatedCandles] = None, error: Optional[Exception] = None):
        self.result = result or AggregatedCandles()
        self.error = error
        self.calls = []

    async def aggregate(self, exchanges, symbol, interval, to_timestamp=0):
        self.calls.append((list(exchanges), symbol, interval, to_timestamp))
        if self.error is not None:
            raise self.error
        return self.result


class FakeBroker:
    def __init__(self, healthy: bool = True):
        self.healthy = healthy

    async def ping(self) -> bool:
        return self.healthy


class FakeSessions:
    async def validate_session(self, token: str) -> Optional[AuthenticatedUser]:
        return AuthenticatedUser(id="user-1", email="trader@example.com") if token == "valid" else None


class FakeVault:
    def __init__(self, stored=None):
        self.stored = stored or {}

    async def get_credentials(self, user_id: str, exchange: str) -> Optional[ExchangeCredentials]:
        return self.stored.get((user_id, exchange))


class FakeAdapter:
    """Stands in for any exchange adapter returned by create_adapter."""

    def __init__(self, name: str, price: float = 0.0, error: Optional[Exception] = None,
                 balance: Optional[Balance] = None, position: Optional[PositionInfo] = None):
        self.name = name
        self.display_name = name.capitalize()
        self.price = price
        self.error = error
        self.balance = balance
        self.position = position
        self.credentials = None

    normalize_symbol = staticmethod(ExchangeAdapter.normalize_symbol)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    async def get_ticker(self, symbol):
        if self.error is not None:
            raise self.error
        return TickerSnapshot(exchange=self.name, symbol=symbol, price=self.price, timestamp=1704110400123)

    async def get_balance(self):
        return self.balance

    async def get_position_info(self, symbol):
        if self.error is not None:
            raise self.error
        return self.position


def patch_adapters(monkeypatch, adapters):
    """Route create_adapter(name, credentials) to prepared fakes."""
    created = []

    def fake_create_adapter(exchange_id, credentials=None):
        key = exchange_id.strip().lower()
        if key not in adapters:
            raise UnsupportedExchange(exchange_id)
        adapter = adapters[key]
        adapter.credentials = credentials
        created.append(adapter)
        return adapter

    monkeypatch.setattr(main, "create_adapter", fake_create_adapter)
    return created


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def client():
    main.app.dependency_overrides.clear()
    main.app.dependency_overrides[get_broker] = lambda: FakeBroker()
    main.app.dependency_overrides[get_session_validator] = lambda: FakeSessions()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def use_aggregator(aggregator: FakeAggregator) -> FakeAggregator:
    main.app.dependency_overrides[get_aggregator] = lambda: aggregator
    return aggregator


AUTH = {"Authorization": "Bearer valid"}


# ============================================
# System Endpoints
# ============================================

class TestSystemEndpoints:

    def test_root(self, client):
        body = client.get("/").json()
        assert body["status"] == "operational"
        assert body["exchanges"] == ["upbit", "bithumb", "binance", "bybit", "okx"]

    def test_exchanges(self, client):
        body = client.get("/exchanges").json()
        assert body["count"] == 5
        assert {e["market"] for e in body["exchanges"]} == {"domestic", "foreign"}

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy", "broker": True}

    def test_health_degraded(self, client):
        main.app.dependency_overrides[get_broker] = lambda: FakeBroker(healthy=False)
        assert client.get("/health").json()["status"] == "degraded"

    def test_unknown_route(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["path"].endswith("/nope")


# ============================================
# /api/kline
# ============================================

class TestKline:

    def test_response_shape(self, client):
        use_aggregator(FakeAggregator(AggregatedCandles(
            premium=[PremiumCandle(timestamp=60, open=1428.5, high=1429, low=1428, close=1428.6, volume=5)],
            foreign=[Candle(timestamp=60, open=70, high=70, low=70, close=70, volume=3)],
        )))

        response = client.get("/api/kline", params={"exchanges": "upbit,binance", "symbol": "BTC", "interval": "1m"})

        assert response.status_code == 200
        body = response.json()
        assert body["candleData"] == [{"time": 60, "open": 1428.5, "high": 1429.0, "low": 1428.0, "close": 1428.6}]
        assert body["volumeData"] == [{"time": 60, "value": 5.0}]
        assert body["ex2VolumeData"] == [{"time": 60, "value": 3.0}]
        assert "ex1VolumeData" not in body
        assert "usdtCandleData" not in body

    def test_parameters(self, client):
        aggregator = use_aggregator(FakeAggregator())
        client.get("/api/kline", params={"exchanges": " UPBIT, bybit,,", "symbol": "eth", "interval": "4h", "to": 1704110400})
        assert aggregator.calls == [(["UPBIT", "bybit"], "eth", "4h", 1704110400)]

    def test_defaults(self, client):
        aggregator = use_aggregator(FakeAggregator())
        body = client.get("/api/kline").json()
        assert aggregator.calls == [([], "BTC", "1m", 0)]
        assert body == {"candleData": [], "volumeData": []}

    def test_invalid_interval(self, client):
        use_aggregator(FakeAggregator(error=InvalidInterval("2m")))
        response = client.get("/api/kline", params={"exchanges": "upbit", "interval": "2m"})
        assert response.status_code == 400

    def test_negative_to_rejected(self, client):
        use_aggregator(FakeAggregator())
        assert client.get("/api/kline", params={"to": -1}).status_code == 422

    def test_unexpected_failure(self, client):
        use_aggregator(FakeAggregator(error=RuntimeError("boom")))
        response = client.get("/api/kline", params={"exchanges": "upbit"})
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to fetch kline data"}


# ============================================
# /api/proxy/position/price
# ============================================

class TestPairPrice:

    def test_prices(self, client, monkeypatch):
        patch_adapters(monkeypatch, {
            "upbit": FakeAdapter("upbit", price=95000000.0),
            "binance": FakeAdapter("binance", price=67000.5),
        })

        response = client.get("/api/proxy/position/price", params={
            "krExchange": "upbit", "frExchange": "binance", "coinSymbol": "btc"
        })

        assert response.status_code == 200
        assert response.json() == {
            "coinSymbol": "BTC",
            "krPrice": 95000000.0,
            "frPrice": 67000.5,
            "krTimestamp": 1704110400123,
            "frTimestamp": 1704110400123,
        }

    def test_missing_parameters(self, client):
        response = client.get("/api/proxy/position/price", params={"krExchange": "upbit"})
        assert response.status_code == 400

    def test_unknown_exchange(self, client, monkeypatch):
        patch_adapters(monkeypatch, {"upbit": FakeAdapter("upbit")})
        response = client.get("/api/proxy/position/price", params={
            "krExchange": "upbit", "frExchange": "kraken", "coinSymbol": "BTC"
        })
        assert response.status_code == 400

    def test_unknown_symbol(self, client, monkeypatch):
        patch_adapters(monkeypatch, {
            "upbit": FakeAdapter("upbit", error=SymbolNotFound("NOPE", "upbit")),
            "binance": FakeAdapter("binance", price=1.0),
        })
        response = client.get("/api/proxy/position/price", params={
            "krExchange": "upbit", "frExchange": "binance", "coinSymbol": "NOPE"
        })
        assert response.status_code == 404

    def test_upstream_down(self, client, monkeypatch):
        patch_adapters(monkeypatch, {
            "upbit": FakeAdapter("upbit", price=1.0),
            "binance": FakeAdapter("binance", error=UpstreamUnavailable("timed out", "binance")),
        })
        response = client.get("/api/proxy/position/price", params={
            "krExchange": "upbit", "frExchange": "binance", "coinSymbol": "BTC"
        })
        assert response.status_code == 502


# ============================================
# Account Endpoints
# ============================================

class TestConnectionTest:

    BODY = {"exchangeName": "upbit", "apiKey": "key", "apiSecret": "secret"}

    def test_requires_session(self, client):
        assert client.post("/api/exchanges/test", json=self.BODY).status_code == 401

    def test_rejects_invalid_session(self, client):
        response = client.post("/api/exchanges/test", json=self.BODY, headers={"Authorization": "Bearer expired"})
        assert response.status_code == 401

    def test_cookie_session(self, client, monkeypatch):
        patch_adapters(monkeypatch, {"upbit": FakeAdapter("upbit", balance=Balance(balance=1.0))})
        client.cookies.set("auth_token", "valid")
        assert client.post("/api/exchanges/test", json=self.BODY).status_code == 200

    def test_success(self, client, monkeypatch):
        created = patch_adapters(monkeypatch, {"upbit": FakeAdapter("upbit", balance=Balance(balance=1500000.0))})

        response = client.post("/api/exchanges/test", json=self.BODY, headers=AUTH)

        body = response.json()
        assert body["success"] is True
        assert body["exchangeName"] == "upbit"
        assert body["data"] == {"balance": 1500000.0, "error": None}
        assert created[0].credentials.api_secret.get_secret_value() == "secret"

    def test_rejected_key(self, client, monkeypatch):
        message = "Upbit rejected the API key. Check that the key and secret are correct."
        patch_adapters(monkeypatch, {"upbit": FakeAdapter("upbit", balance=Balance(error=message))})

        body = client.post("/api/exchanges/test", json=self.BODY, headers=AUTH).json()

        assert body["success"] is False
        assert body["message"] == message

    def test_unknown_exchange(self, client, monkeypatch):
        patch_adapters(monkeypatch, {})
        body = dict(self.BODY, exchangeName="kraken")
        assert client.post("/api/exchanges/test", json=body, headers=AUTH).status_code == 400

    def test_validator_not_installed(self, client):
        del main.app.dependency_overrides[get_session_validator]
        response = client.post("/api/exchanges/test", json=self.BODY, headers=AUTH)
        assert response.status_code == 503


class TestPositions:

    CREDENTIALS = ExchangeCredentials(api_key="k", api_secret="s")

    @pytest.fixture(autouse=True)
    def vault(self, client):
        vault = FakeVault({("user-1", "bybit"): self.CREDENTIALS, ("user-1", "upbit"): self.CREDENTIALS})
        main.app.dependency_overrides[get_credentials_lookup] = lambda: vault
        return vault

    def test_position(self, client, monkeypatch):
        position = PositionInfo(exchange="bybit", symbol="BTC", side="long", size=0.01, entry_price=67000)
        patch_adapters(monkeypatch, {"bybit": FakeAdapter("bybit", position=position)})

        response = client.get("/api/positions/바이빗/BTC", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["side"] == "long"
        assert response.json()["size"] == 0.01

    def test_no_stored_key(self, client):
        assert client.get("/api/positions/okx/BTC", headers=AUTH).status_code == 404

    def test_unsupported_on_spot_exchange(self, client, monkeypatch):
        patch_adapters(monkeypatch, {
            "upbit": FakeAdapter("upbit", error=UnsupportedOperation("Upbit does not support position lookup", "upbit"))
        })
        assert client.get("/api/positions/upbit/BTC", headers=AUTH).status_code == 400

    def test_exchange_rejects_key(self, client, monkeypatch):
        patch_adapters(monkeypatch, {"bybit": FakeAdapter("bybit", error=UpstreamAuthError("invalid", "bybit"))})
        assert client.get("/api/positions/bybit/BTC", headers=AUTH).status_code == 403

    def test_upstream_down(self, client, monkeypatch):
        patch_adapters(monkeypatch, {"bybit": FakeAdapter("bybit", error=UpstreamUnavailable("down", "bybit"))})
        assert client.get("/api/positions/bybit/BTC", headers=AUTH).status_code == 502

    def test_unknown_exchange(self, client):
        assert client.get("/api/positions/kraken/BTC", headers=AUTH).status_code == 400

    def test_requires_session(self, client):
        assert client.get("/api/positions/bybit/BTC").status_code == 401
