import pytest
from fastapi.testclient import TestClient

from strategy_engine.config import config
from strategy_engine.server import create_app
from strategy_engine.strategy_manager import StrategyManager


@pytest.fixture
def client():
    app = create_app(manager=StrategyManager(paper_trading=False))
    with TestClient(app) as c:
        yield c


def test_health_and_status(client):
    assert client.get("/api/").json()["status"] == "running"
    status = client.get("/api/status").json()
    assert status["is_running"] is True
    assert status["active_strategies"] == 0
    assert status["data_distributor"]["total_subscriptions"] == 0


def test_start_duplicate_stop_round_trip(client, strategy_dict):
    resp = client.post("/api/strategies/start", json=strategy_dict())
    assert resp.status_code == 200
    assert resp.json()["id"] == "rsi-oversold"

    assert client.post("/api/strategies/start", json=strategy_dict()).status_code == 409

    listed = client.get("/api/strategies").json()
    assert [s["id"] for s in listed] == ["rsi-oversold"]
    assert listed[0]["status"] == "running"

    assert client.post("/api/strategies/rsi-oversold/pause").json()["status"] == "paused"
    assert client.post("/api/strategies/rsi-oversold/resume").json()["status"] == "running"
    assert client.post("/api/strategies/rsi-oversold/stop").status_code == 200
    assert client.post("/api/strategies/rsi-oversold/stop").status_code == 404
    assert client.get("/api/strategies/rsi-oversold/metrics").json()["status"] == "idle"


def test_invalid_config_is_400(client, strategy_dict):
    cfg = strategy_dict()
    cfg.pop("symbol")
    resp = client.post("/api/strategies/start", json=cfg)
    assert resp.status_code == 400
    assert "symbol" in resp.json()["detail"]


def test_unknown_strategy_is_404(client):
    for action in ("stop", "pause", "resume"):
        assert client.post(f"/api/strategies/ghost/{action}").status_code == 404


def test_push_candles_and_trades(client, strategy_dict):
    client.post("/api/strategies/start", json=strategy_dict())
    candle = {"symbol": "BTCUSDT", "timeframe": "1m", "timestamp": 1_700_000_000_000,
              "open": 100, "high": 101, "low": 99, "close": 100.5, "volume": 3}
    assert client.post("/api/candles", json=candle).json() == {"delivered": 1}
    assert client.post("/api/candles", json={**candle, "symbol": "ETHUSDT"}).json() == {"delivered": 0}

    trade = {"id": "t1", "strategy_id": "rsi-oversold", "timestamp": 1, "type": "entry",
             "side": "long", "price": 100, "quantity": 1}
    assert client.post("/api/trades", json=trade).status_code == 200
    exit_trade = {**trade, "id": "t2", "type": "exit", "price": 105}
    assert client.post("/api/trades", json=exit_trade).json()["pnl"] == pytest.approx(5.0)
    assert client.post("/api/trades", json={**trade, "strategy_id": "ghost"}).status_code == 404

    metrics = client.get("/api/strategies/rsi-oversold/metrics").json()
    assert metrics["performance"]["realized_pnl"] == pytest.approx(5.0)
    assert metrics["status"]["total_candles"] == 1


def test_websocket_ping_and_lifecycle_push(client, strategy_dict):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("ping")
        assert ws.receive_text() == "pong"

        client.post("/api/strategies/start", json=strategy_dict())
        msg = ws.receive_json()
        assert msg["type"] == "lifecycle"
        assert msg["data"]["kind"] == "strategyStarted"
        assert msg["data"]["strategy_id"] == "rsi-oversold"


def test_websocket_token_required(client, monkeypatch):
    monkeypatch.setitem(config, "ws_auth_token", "s3cret-token")
    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json() == {"type": "error", "message": "unauthorized"}

    with client.websocket_connect("/ws?token=s3cret-token") as ws:
        ws.send_text("ping")
        assert ws.receive_text() == "pong"
