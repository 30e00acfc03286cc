# tradeledger/domain/metrics.py
"""Metrics and reporting calculations."""

import numbers
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from tradeledger.domain.filters import EngineFilters
from tradeledger.domain.models import ClosedTrade, OpenPosition, OrphanedClose
from tradeledger.domain.tags import TagJoin
from tradeledger.domain.timeutils import get_timezone, range_bounds, to_utc

WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

EQUITY_CURVE_COLUMNS = ["date", "closed_at", "symbol", "pnl", "cumulative_pnl", "peak", "drawdown"]
DAILY_COLUMNS = ["date", "daily_pnl", "trades", "cumulative_pnl", "drawdown"]
MONTHLY_COLUMNS = ["month", "pnl", "trades"]
DAY_OF_WEEK_COLUMNS = ["day", "pnl", "trades"]
SYMBOL_COLUMNS = ["symbol", "trades", "wins", "losses", "win_rate", "pnl"]
ASSET_MIX_COLUMNS = ["instrument_kind", "trades", "pnl"]


@dataclass
class AggregateMetrics:
    """Summary statistics over the filtered closed trades and open lots."""
    net_pnl: float = 0.0
    gross_pnl: float = 0.0
    total_fees: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    avg_win_pct: float = 0.0
    avg_loss_pct: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    avg_trade: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    profit_factor: Optional[float] = None
    win_streak: int = 0
    loss_streak: int = 0
    max_drawdown: float = 0.0
    open_positions_count: int = 0
    unrealized_cost: float = 0.0
    orphaned_close_count: int = 0
    mtd_pnl: Optional[float] = None
    ytd_pnl: Optional[float] = None

    equity_curve: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=EQUITY_CURVE_COLUMNS))
    daily: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=DAILY_COLUMNS))
    monthly: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=MONTHLY_COLUMNS))
    day_of_week: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=DAY_OF_WEEK_COLUMNS))
    symbols: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=SYMBOL_COLUMNS))
    asset_mix: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=ASSET_MIX_COLUMNS))

    FRAMES = ("equity_curve", "daily", "monthly", "day_of_week", "symbols", "asset_mix")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name, value in self.__dict__.items():
            if name in self.FRAMES:
                out[name] = frame_records(value)
            else:
                out[name] = round_money(value)
        return out


class MetricsCalculator:
    """Calculate trading metrics and equity curve from ledger output."""

    @staticmethod
    def apply_filters(
        closed_trades: Sequence[ClosedTrade],
        open_positions: Sequence[OpenPosition],
        orphaned_closes: Sequence[OrphanedClose],
        filters: EngineFilters,
    ) -> Tuple[List[ClosedTrade], List[OpenPosition], List[OrphanedClose]]:
        """
        Output-stage filtering.

        Closed trades (and orphaned closes) are kept by close time within the
        range; open lots are kept when opened on or before the range end.
        """
        start, end = range_bounds(filters.start_date, filters.end_date, filters.report_timezone)
        account = filters.account
        kind = filters.asset_kind
        symbols = filters.symbols

        def _common(account_id: str, instrument_kind, symbol: str) -> bool:
            if account is not None and account_id != account:
                return False
            if kind is not None and instrument_kind != kind:
                return False
            if symbols and not any((symbol or "").lower().startswith(s) for s in symbols):
                return False
            return True

        def _closed_in_range(ts: datetime) -> bool:
            if start is not None and ts < start:
                return False
            if end is not None and ts > end:
                return False
            return True

        def _tagged(item) -> bool:
            if not filters.tag_ids:
                return True
            return TagJoin.matches(item.tags, filters.tag_ids, filters.tag_filter_mode)

        closed = [
            t for t in closed_trades
            if _closed_in_range(t.closed_at)
            and _common(t.account_id, t.instrument_kind, t.symbol)
            and _tagged(t)
        ]
        opened = [
            p for p in open_positions
            if (end is None or p.opened_at <= end)
            and _common(p.account_id, p.instrument_kind, p.symbol)
            and _tagged(p)
        ]
        orphans = [
            o for o in orphaned_closes
            if _closed_in_range(o.closed_at)
            and _common(o.account_id, o.instrument_kind, o.symbol)
        ]
        return closed, opened, orphans

    @staticmethod
    def compute(
        closed_trades: Sequence[ClosedTrade],
        open_positions: Sequence[OpenPosition] = (),
        orphaned_closes: Sequence[OrphanedClose] = (),
        report_timezone: str = "UTC",
        use_gross: bool = False,
        as_of: Optional[datetime] = None,
    ) -> AggregateMetrics:
        """Aggregate already-filtered ledger output."""
        metrics = AggregateMetrics(**MetricsCalculator.get_overview_stats(closed_trades, use_gross))

        metrics.open_positions_count = len(open_positions)
        metrics.unrealized_cost = sum(p.cost_basis for p in open_positions)
        metrics.orphaned_close_count = len(orphaned_closes)
        metrics.win_streak, metrics.loss_streak = MetricsCalculator.get_streaks(closed_trades, use_gross)

        frame = MetricsCalculator.trades_frame(closed_trades, report_timezone, use_gross)
        metrics.equity_curve = MetricsCalculator.get_equity_curve(frame)
        metrics.max_drawdown = (
            float(-metrics.equity_curve["drawdown"].min()) if not metrics.equity_curve.empty else 0.0
        )
        metrics.daily = MetricsCalculator.get_daily_pnl(frame)
        metrics.monthly = MetricsCalculator.get_monthly_pnl(frame)
        metrics.day_of_week = MetricsCalculator.get_day_of_week_pnl(frame)
        metrics.symbols = MetricsCalculator.get_symbol_stats(frame)
        metrics.asset_mix = MetricsCalculator.get_asset_mix(frame)

        if as_of is not None:
            metrics.mtd_pnl, metrics.ytd_pnl = MetricsCalculator.get_period_to_date(
                closed_trades, as_of, report_timezone, use_gross
            )
        return metrics

    @staticmethod
    def get_overview_stats(closed_trades: Sequence[ClosedTrade], use_gross: bool = False) -> Dict:
        """Get overall trading statistics."""
        if not closed_trades:
            return {}

        pnls = [t.pnl(use_gross) for t in closed_trades]
        wins = [t for t, pnl in zip(closed_trades, pnls) if pnl > 0]
        losses = [t for t, pnl in zip(closed_trades, pnls) if pnl < 0]
        win_pnls = [t.pnl(use_gross) for t in wins]
        loss_pnls = [t.pnl(use_gross) for t in losses]

        gross_profit = sum(win_pnls)
        gross_loss = abs(sum(loss_pnls))
        net = sum(pnls)

        def _avg_pct(trades: List[ClosedTrade]) -> float:
            if not trades:
                return 0.0
            pcts = [
                (t.pnl(use_gross) / t.cost_basis) * 100 if t.cost_basis > 0 else 0.0
                for t in trades
            ]
            return abs(sum(pcts) / len(pcts))

        return {
            "net_pnl": net,
            "gross_pnl": sum(t.realized_pnl for t in closed_trades),
            "total_fees": sum(t.fees for t in closed_trades),
            "total_trades": len(closed_trades),
            "winning_trades": len(wins),
            "losing_trades": len(losses),
            "win_rate": len(wins) / len(closed_trades),
            "avg_win": gross_profit / len(wins) if wins else 0.0,
            "avg_loss": gross_loss / len(losses) if losses else 0.0,
            "avg_win_pct": _avg_pct(wins),
            "avg_loss_pct": _avg_pct(losses),
            "largest_win": max(win_pnls) if win_pnls else 0.0,
            "largest_loss": min(loss_pnls) if loss_pnls else 0.0,
            "avg_trade": net / len(closed_trades),
            "gross_profit": gross_profit,
            "gross_loss": gross_loss,
            "profit_factor": gross_profit / gross_loss if gross_loss > 0 else None,
        }

    @staticmethod
    def get_streaks(closed_trades: Sequence[ClosedTrade], use_gross: bool = False) -> Tuple[int, int]:
        """Longest run of consecutive wins and losses, in close order. Flat trades don't break a run."""
        win_streak = loss_streak = current_win = current_loss = 0
        for t in sorted(closed_trades, key=lambda t: t.closed_at):
            pnl = t.pnl(use_gross)
            if pnl > 0:
                current_win += 1
                current_loss = 0
                win_streak = max(win_streak, current_win)
            elif pnl < 0:
                current_loss += 1
                current_win = 0
                loss_streak = max(loss_streak, current_loss)
        return win_streak, loss_streak

    @staticmethod
    def trades_frame(
        closed_trades: Sequence[ClosedTrade],
        report_timezone: str = "UTC",
        use_gross: bool = False,
    ) -> pd.DataFrame:
        """One row per closed trade, ordered by close time, with local calendar fields."""
        tz = get_timezone(report_timezone)
        rows = []
        for seq, t in enumerate(sorted(closed_trades, key=lambda t: t.closed_at)):
            local = t.closed_at.astimezone(tz)
            pnl = t.pnl(use_gross)
            rows.append(
                {
                    "seq": seq,
                    "closed_at": to_utc(t.closed_at).isoformat(),
                    "date": local.strftime("%Y-%m-%d"),
                    "month": local.strftime("%Y-%m"),
                    "weekday": local.weekday(),
                    "symbol": t.symbol,
                    "instrument_kind": t.instrument_kind.value,
                    "pnl": pnl,
                    "is_win": 1 if pnl > 0 else 0,
                    "is_loss": 1 if pnl < 0 else 0,
                }
            )
        return pd.DataFrame(
            rows,
            columns=["seq", "closed_at", "date", "month", "weekday", "symbol",
                     "instrument_kind", "pnl", "is_win", "is_loss"],
        )

    @staticmethod
    def get_equity_curve(frame: pd.DataFrame) -> pd.DataFrame:
        """
        Cumulative P&L per closed trade with running peak-to-trough drawdown.

        Returns DataFrame with columns: date, closed_at, symbol, pnl, cumulative_pnl, peak, drawdown
        """
        if frame.empty:
            return pd.DataFrame(columns=EQUITY_CURVE_COLUMNS)

        df = frame.sort_values("seq")[["date", "closed_at", "symbol", "pnl"]].reset_index(drop=True)
        df["cumulative_pnl"] = df["pnl"].cumsum()
        # Peak starts from flat, so early losses count as drawdown
        df["peak"] = df["cumulative_pnl"].cummax().clip(lower=0.0)
        df["drawdown"] = df["cumulative_pnl"] - df["peak"]
        return df[EQUITY_CURVE_COLUMNS]

    @staticmethod
    def get_daily_pnl(frame: pd.DataFrame) -> pd.DataFrame:
        """Daily P&L by close date (report timezone)."""
        if frame.empty:
            return pd.DataFrame(columns=DAILY_COLUMNS)

        df = (
            frame.groupby("date", as_index=False)
            .agg(daily_pnl=("pnl", "sum"), trades=("pnl", "count"))
            .sort_values("date")
            .reset_index(drop=True)
        )
        df["cumulative_pnl"] = df["daily_pnl"].cumsum()
        df["drawdown"] = df["cumulative_pnl"] - df["cumulative_pnl"].cummax().clip(lower=0.0)
        return df[DAILY_COLUMNS]

    @staticmethod
    def get_monthly_pnl(frame: pd.DataFrame) -> pd.DataFrame:
        if frame.empty:
            return pd.DataFrame(columns=MONTHLY_COLUMNS)
        return (
            frame.groupby("month", as_index=False)
            .agg(pnl=("pnl", "sum"), trades=("pnl", "count"))
            .sort_values("month")
            .reset_index(drop=True)[MONTHLY_COLUMNS]
        )

    @staticmethod
    def get_day_of_week_pnl(frame: pd.DataFrame) -> pd.DataFrame:
        """P&L by weekday of close, Monday first; only weekdays with closes."""
        if frame.empty:
            return pd.DataFrame(columns=DAY_OF_WEEK_COLUMNS)
        df = (
            frame.groupby("weekday", as_index=False)
            .agg(pnl=("pnl", "sum"), trades=("pnl", "count"))
            .sort_values("weekday")
            .reset_index(drop=True)
        )
        df["day"] = df["weekday"].map(lambda d: WEEKDAYS[int(d)])
        return df[DAY_OF_WEEK_COLUMNS]

    @staticmethod
    def get_symbol_stats(frame: pd.DataFrame) -> pd.DataFrame:
        """Get performance by symbol, best first."""
        if frame.empty:
            return pd.DataFrame(columns=SYMBOL_COLUMNS)
        df = frame.groupby("symbol", as_index=False).agg(
            trades=("pnl", "count"),
            wins=("is_win", "sum"),
            losses=("is_loss", "sum"),
            pnl=("pnl", "sum"),
        )
        df["win_rate"] = df["wins"] / df["trades"]
        df = df.sort_values(["pnl", "symbol"], ascending=[False, True]).reset_index(drop=True)
        return df[SYMBOL_COLUMNS]

    @staticmethod
    def get_asset_mix(frame: pd.DataFrame) -> pd.DataFrame:
        if frame.empty:
            return pd.DataFrame(columns=ASSET_MIX_COLUMNS)
        return (
            frame.groupby("instrument_kind", as_index=False)
            .agg(trades=("pnl", "count"), pnl=("pnl", "sum"))
            .sort_values("instrument_kind")
            .reset_index(drop=True)[ASSET_MIX_COLUMNS]
        )

    @staticmethod
    def get_period_to_date(
        closed_trades: Sequence[ClosedTrade],
        as_of: datetime,
        report_timezone: str = "UTC",
        use_gross: bool = False,
    ) -> Tuple[float, float]:
        """(month-to-date, year-to-date) P&L as of a reference time."""
        tz = get_timezone(report_timezone)
        local_now = to_utc(as_of).astimezone(tz)
        month_start = tz.localize(datetime(local_now.year, local_now.month, 1))
        year_start = tz.localize(datetime(local_now.year, 1, 1))
        upper = to_utc(as_of)

        mtd = sum(t.pnl(use_gross) for t in closed_trades if month_start <= t.closed_at <= upper)
        ytd = sum(t.pnl(use_gross) for t in closed_trades if year_start <= t.closed_at <= upper)
        return mtd, ytd


def round_money(value):
    """Round floats to cents for serialization; leave everything else alone."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real):
        return round(float(value), 2)
    return value


def frame_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    return [
        {str(k): round_money(v) for k, v in row.items()}
        for row in df.to_dict(orient="records")
    ]
