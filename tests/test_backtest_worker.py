"""
Tests for the isolated backtest worker, history loading and trade export.
"""

import json

import pytest

from src.backtest import (
    BacktestConfig,
    BacktestRequest,
    BacktestWorker,
    BacktestWorkerError,
    DoneMessage,
    ErrorMessage,
    HistoricalMarket,
    HistoricalSnapshot,
    ProgressMessage,
    load_history,
    load_outcomes,
    run_request,
)
from src.rules import ActionType, Condition, ConditionField, Operator, RuleAction, TradingRule
from src.trading import Outcome
from src.trading.export import TRADE_COLUMNS, trades_to_csv, trades_to_frame

T0 = 1_700_000_000_000


def make_request(**config_kwargs):
    rule = TradingRule(
        id="cheap-yes",
        name="Cheap YES",
        action=RuleAction(ActionType.BUY, Outcome.YES, 10.0),
        conditions=(Condition(ConditionField.PRICE_YES, Operator.LT, 0.3),),
        cooldown=60,
    )
    markets = [
        HistoricalMarket(i + 1, f"btc-updown-5m-{T0 // 1000 + i * 300}", T0 + i * 300_000,
                         T0 + (i + 1) * 300_000, "Up", 100.0)
        for i in range(4)
    ]
    snapshots = [HistoricalSnapshot(m.id, m.start_time + 60_000, 0.25) for m in markets]
    config_kwargs.setdefault("rules", [rule])
    return BacktestRequest(config=BacktestConfig(**config_kwargs), markets=markets, snapshots=snapshots)


class TestRunRequest:
    """Message protocol of the worker body."""

    def test_progress_then_single_done(self):
        posted = []
        run_request(make_request(), posted.append)

        assert all(isinstance(m, ProgressMessage) for m in posted[:-1])
        assert [m.percent for m in posted[:-1]] == [0, 25, 50, 75, 100]
        assert isinstance(posted[-1], DoneMessage)
        assert posted[-1].result.markets_processed == 4

    def test_failure_posts_only_error(self):
        posted = []
        run_request(make_request(starting_balance=-1), posted.append)

        assert len(posted) == 1
        assert isinstance(posted[0], ErrorMessage)
        assert "ValueError" in posted[0].message


class TestBacktestWorker:
    """Process-isolated runs."""

    def test_run_returns_result_and_progress(self):
        worker = BacktestWorker(poll_interval=0.1)
        seen = []

        result = worker.run(make_request(), on_progress=seen.append)

        assert result.markets_processed == 4
        assert seen[-1] == 100
        assert not worker.is_running

    def test_run_raises_on_error(self):
        worker = BacktestWorker(poll_interval=0.1)
        with pytest.raises(BacktestWorkerError, match="ValueError"):
            worker.run(make_request(starting_balance=-1))

    def test_messages_before_start(self):
        with pytest.raises(BacktestWorkerError):
            next(BacktestWorker().messages())

    def test_cancel_when_idle_is_safe(self):
        worker = BacktestWorker()
        worker.cancel()
        assert not worker.is_running


class TestLoadHistory:
    """CSV / JSON loading."""

    def test_csv_with_bad_rows(self, tmp_path):
        markets = tmp_path / "markets.csv"
        markets.write_text(
            "id,slug,start_time,end_time,outcome,volume\n"
            "1,btc-updown-5m-1700000000,2023-11-14T22:13:20Z,2023-11-14T22:18:20Z,Up,1200.5\n"
            "2,btc-updown-5m-1700000300,not-a-date,2023-11-14T22:23:20Z,Down,\n"
            "3,btc-updown-5m-1700000600,2023-11-14T22:23:20Z,2023-11-14T22:28:20Z,,\n"
        )
        snapshots = tmp_path / "snapshots.csv"
        snapshots.write_text(
            "market_id,recorded_at,mid_price_yes,best_bid_yes,best_ask_yes,last_trade_price\n"
            "1,1700000060000,0.25,0.24,0.26,0.25\n"
            "1,1700000090000,,,,0.3\n"
        )

        data = load_history(markets, snapshots)

        assert [m.id for m in data.markets] == [1, 3]
        assert data.markets[0].start_time == T0
        assert data.markets[0].volume == 1200.5
        assert data.markets[1].outcome is None
        assert data.rows_dropped == 1
        assert data.snapshots[1].mid_price_yes is None
        assert data.snapshots[1].last_trade_price == 0.3
        assert [o.id for o in data.outcomes] == [1]

    def test_jsonl_outcomes(self, tmp_path):
        markets = tmp_path / "markets.json"
        markets.write_text(json.dumps([
            {"id": 1, "slug": "a", "start_time": T0, "end_time": T0 + 300_000, "outcome": "Down"}
        ]))
        snapshots = tmp_path / "snapshots.json"
        snapshots.write_text(json.dumps([{"market_id": 1, "recorded_at": T0 + 1000, "mid_price_yes": 0.4}]))
        outcomes = tmp_path / "outcomes.jsonl"
        outcomes.write_text(
            json.dumps({"id": 0, "slug": "z", "start_time": T0 - 300_000, "outcome": "Up", "outcome_binary": 1})
            + "\n"
        )

        data = load_history(markets, snapshots, outcomes)

        assert data.outcomes[0].outcome_binary == 1
        assert data.snapshots[0].mid_price_yes == 0.4

    def test_load_outcomes_sorted(self, tmp_path):
        path = tmp_path / "outcomes.csv"
        path.write_text(
            "id,slug,start_time,outcome\n"
            f"2,b,{T0 + 300_000},Down\n"
            f"1,a,{T0},Up\n"
            "3,c,,Up\n"
        )

        outcomes = load_outcomes(path)

        assert [o.id for o in outcomes] == [1, 2]
        assert [o.outcome_binary for o in outcomes] == [1, 0]

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "markets.parquet"
        path.write_text("")
        with pytest.raises(ValueError):
            load_history(path, path)


class TestExport:
    """CSV export of trades."""

    def test_trades_to_csv(self, tmp_path):
        posted = []
        run_request(make_request(), posted.append)
        trades = posted[-1].result.trades
        out = tmp_path / "out" / "trades.csv"

        text = trades_to_csv(trades, out)

        lines = text.splitlines()
        assert lines[0].startswith("id,time_utc,timestamp,market_id")
        assert len(lines) == len(trades) + 1
        assert out.read_text() == text

    def test_empty_frame_has_columns(self):
        assert list(trades_to_frame([]).columns) == TRADE_COLUMNS

    def test_dict_rows(self):
        df = trades_to_frame([{"id": "x", "timestamp": T0, "side": "BUY", "custom": 1}])
        assert list(df.columns) == ["id", "time_utc", "timestamp", "side", "custom"]
        assert df.loc[0, "time_utc"] == "2023-11-14 22:13:20"
