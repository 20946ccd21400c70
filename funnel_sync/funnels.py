"""
Funnel aggregation.

Campaigns are grouped into funnels by a naming convention: any campaign whose
name contains "Funnel <n>" (case-insensitive, whitespace optional) belongs to
funnel <n>; everything else lands in the "unknown" bucket. Metrics of all
campaigns in a funnel are summed, then frequency and link CTR are derived from
the sums.

Nothing in this module does I/O.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from funnel_sync.errors import DataShapeError

logger = logging.getLogger(__name__)

FUNNEL_PATTERN = re.compile(r"Funnel\s*(\d+)", re.IGNORECASE)
UNKNOWN_FUNNEL_ID = "unknown"

FunnelKey = Tuple[date, date, str]


# ============================================================================
# FIELD COERCION
# ============================================================================

def parse_decimal(value: Any, field_name: str = "value") -> Decimal:
    """
    Parse a Graph API numeric string into a Decimal.

    Raises:
        DataShapeError: If the value is missing or not numeric
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise DataShapeError(f"{field_name} is missing")
    if isinstance(value, bool):
        raise DataShapeError(f"{field_name} is not numeric: {value!r}")
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise DataShapeError(f"{field_name} is not numeric: {value!r}") from e
    if not result.is_finite():
        raise DataShapeError(f"{field_name} is not finite: {value!r}")
    return result


def parse_int(value: Any, field_name: str = "value") -> int:
    """Parse a count, truncating any fractional part ("12.7" -> 12)."""
    return int(parse_decimal(value, field_name))


def _lenient(parser, record: Dict[str, Any], field_name: str):
    try:
        return parser(record.get(field_name), field_name)
    except DataShapeError as e:
        logger.debug(f"Treating {field_name} as zero for campaign {record.get('campaign_id')}: {e}")
        return parser(0, field_name)


# ============================================================================
# DATA CONTRACTS
# ============================================================================

@dataclass(frozen=True)
class CampaignInsight:
    """Performance of one campaign over one window."""

    campaign_id: str
    campaign_name: str
    spend: Decimal = Decimal("0")
    impressions: int = 0
    reach: int = 0
    clicks: int = 0

    @classmethod
    def from_api(cls, record: Dict[str, Any], campaign_name: Optional[str] = None) -> "CampaignInsight":
        """
        Build from a raw insight record.

        Missing or malformed metrics become zero; the record is never dropped.
        """
        return cls(
            campaign_id=str(record.get("campaign_id") or ""),
            campaign_name=campaign_name or record.get("campaign_name") or "",
            spend=_lenient(parse_decimal, record, "spend"),
            impressions=_lenient(parse_int, record, "impressions"),
            reach=_lenient(parse_int, record, "reach"),
            clicks=_lenient(parse_int, record, "clicks"),
        )


@dataclass(frozen=True)
class FunnelRow:
    """Finalized funnel aggregate, in the shape persisted to funnel_analytics."""

    funnel_id: str
    funnel_name: str
    start_date: date
    end_date: date
    amount_spent: Decimal
    impressions: int
    reach: int
    ads_link_clicks: int
    frequency: float
    link_ctr: Optional[float]
    is_current_week: bool = True

    @property
    def key(self) -> FunnelKey:
        return (self.start_date, self.end_date, self.funnel_id)

    def stamped_current_week(self) -> "FunnelRow":
        return replace(self, is_current_week=True)

    def to_record(self) -> Dict[str, Any]:
        return {
            "funnel_id": self.funnel_id,
            "funnel_name": self.funnel_name,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "amount_spent": self.amount_spent,
            "impressions": self.impressions,
            "reach": self.reach,
            "ads_link_clicks": self.ads_link_clicks,
            "frequency": self.frequency,
            "link_ctr": self.link_ctr,
            "is_current_week": self.is_current_week,
        }


# ============================================================================
# CLASSIFICATION
# ============================================================================

def classify_funnel(campaign_name: Optional[str]) -> str:
    """
    Map a campaign name to its funnel id.

    >>> classify_funnel("Spring Funnel 3 Retargeting")
    '3'
    >>> classify_funnel("FUNNEL7")
    '7'
    >>> classify_funnel("Brand Awareness")
    'unknown'
    """
    match = FUNNEL_PATTERN.search(campaign_name or "")
    return match.group(1) if match else UNKNOWN_FUNNEL_ID


def funnel_display_name(funnel_id: str) -> str:
    return f"Funnel #{funnel_id}"


# ============================================================================
# ACCUMULATION
# ============================================================================

@dataclass
class FunnelAccumulator:
    """Running totals for one funnel within one account-window."""

    funnel_id: str
    start_date: date
    end_date: date
    amount_spent: Decimal = Decimal("0")
    impressions: int = 0
    reach: int = 0
    ads_link_clicks: int = 0
    # Campaign-level contributions; dropped on finalize
    campaigns: List[CampaignInsight] = field(default_factory=list)
    finalized: bool = False

    @property
    def funnel_name(self) -> str:
        return funnel_display_name(self.funnel_id)

    def fold(self, insight: CampaignInsight) -> None:
        if self.finalized:
            raise RuntimeError(f"{self.funnel_name} is already finalized")
        self.amount_spent += insight.spend
        self.impressions += insight.impressions
        self.reach += insight.reach
        self.ads_link_clicks += insight.clicks
        self.campaigns.append(insight)

    def finalize(self) -> FunnelRow:
        """Compute derived metrics, drop campaign detail and freeze the totals."""
        if self.finalized:
            raise RuntimeError(f"{self.funnel_name} is already finalized")

        frequency = self.impressions / self.reach if self.reach > 0 else 0.0
        link_ctr = (
            (self.ads_link_clicks / self.impressions) * 100
            if self.impressions > 0
            else None
        )

        self.campaigns = []
        self.finalized = True

        return FunnelRow(
            funnel_id=self.funnel_id,
            funnel_name=self.funnel_name,
            start_date=self.start_date,
            end_date=self.end_date,
            amount_spent=self.amount_spent,
            impressions=self.impressions,
            reach=self.reach,
            ads_link_clicks=self.ads_link_clicks,
            frequency=frequency,
            link_ctr=link_ctr,
        )


def aggregate_insights(
    insights: Iterable[CampaignInsight],
    start_date: date,
    end_date: date,
) -> List[FunnelRow]:
    """
    Group campaign insights into funnels and return one finalized row per funnel.

    Args:
        insights: Campaign insights of a single account and window
        start_date: First day of the window (inclusive)
        end_date: Last day of the window (inclusive)

    Returns:
        Finalized rows sorted by funnel id; empty when there are no insights
    """
    accumulators: Dict[str, FunnelAccumulator] = {}

    for insight in insights:
        funnel_id = classify_funnel(insight.campaign_name)
        accumulator = accumulators.get(funnel_id)
        if accumulator is None:
            accumulator = FunnelAccumulator(funnel_id=funnel_id, start_date=start_date, end_date=end_date)
            accumulators[funnel_id] = accumulator
        accumulator.fold(insight)

    return [accumulators[funnel_id].finalize() for funnel_id in sorted(accumulators)]
