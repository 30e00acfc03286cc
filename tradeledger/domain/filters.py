# tradeledger/domain/filters.py
"""Per-request engine options."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Mapping, Optional, Sequence, Union

from tradeledger.domain.models import InstrumentKind, PositionKey, TagMeta

DateLike = Union[date, datetime]


@dataclass
class EngineFilters:
    """
    Output-stage filters and side inputs for one engine call.

    Filters never affect matching: the full history is matched first and
    these are applied to the results afterwards.

    Attributes:
        start_date: keep closed trades closed on/after this day (report tz)
        end_date: keep closed trades closed on/before, open lots opened on/before this day
        account_id: restrict output to one account (None or "all" = every account)
        asset_type: STOCK / OPTION (None or "all" = both)
        symbols: case-insensitive symbol prefixes
        tag_ids: keep items carrying any/all of these tags (see tag_filter_mode)
        tag_filter_mode: "any" or "all"
        position_tags: position key -> tag ids
        tag_definitions: tag id -> metadata
        report_timezone: timezone for date ranges and day/month buckets
        use_gross: aggregate gross instead of net (after fees) P&L
        as_of: reference time for option expiry and MTD/YTD figures
    """
    start_date: Optional[DateLike] = None
    end_date: Optional[DateLike] = None
    account_id: Optional[str] = None
    asset_type: Optional[Union[InstrumentKind, str]] = None
    symbols: Sequence[str] = ()
    tag_ids: Sequence[str] = ()
    tag_filter_mode: str = "any"
    position_tags: Mapping[PositionKey, Sequence[str]] = field(default_factory=dict)
    tag_definitions: Mapping[str, TagMeta] = field(default_factory=dict)
    report_timezone: str = "UTC"
    use_gross: bool = False
    as_of: Optional[datetime] = None

    def __post_init__(self):
        if self.tag_filter_mode not in ("any", "all"):
            raise ValueError(f"tag_filter_mode must be 'any' or 'all', got {self.tag_filter_mode!r}")
        if isinstance(self.symbols, str):
            self.symbols = tuple(s for s in self.symbols.split(","))
        self.symbols = tuple(s.strip().lower() for s in self.symbols if s and s.strip())

    @property
    def asset_kind(self) -> Optional[InstrumentKind]:
        if self.asset_type is None or str(self.asset_type).lower() == "all":
            return None
        if isinstance(self.asset_type, InstrumentKind):
            return self.asset_type
        return InstrumentKind(str(self.asset_type).upper())

    @property
    def account(self) -> Optional[str]:
        if not self.account_id or self.account_id == "all":
            return None
        return self.account_id
