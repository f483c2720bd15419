from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from datetime import date, datetime
from decimal import Decimal

from services.statistics import Z_VALUES


class StatsSettings(BaseModel):
    """Inputs of the statistics engine that are deployment configuration, not data."""
    cost_ratio: float = Field(default=0.60, ge=0, le=1, description="Share of revenue that is cost.")
    significance_level: float = Field(default=0.05, gt=0, lt=1)
    confidence_level: float = 0.95
    projection_days: int = Field(default=30, gt=0)
    use_control_sample_size: bool = False

    @field_validator("confidence_level")
    @classmethod
    def check_confidence_level(cls, value):
        if value not in Z_VALUES:
            raise ValueError(f"Unsupported confidence level {value}; expected one of {sorted(Z_VALUES)}")
        return value

    @classmethod
    def from_config(cls, config) -> "StatsSettings":
        return cls(
            cost_ratio=config.cost_ratio,
            significance_level=config.significance_level,
            confidence_level=config.confidence_level,
            projection_days=config.projection_days,
            use_control_sample_size=config.ztest_use_control_sample_size,
        )


class CounterRow(BaseModel):
    """One accumulator record per (experiment, variant, date)."""
    experiment_id: int
    variant_id: int
    date: date
    impressions: int = 0
    unique_users: int = 0
    clicks: int = 0
    conversions: int = 0
    revenue: Decimal = Decimal("0.00")

    model_config = ConfigDict(frozen=True)


class AggregatedTotals(BaseModel):
    """Counter rows of one variant summed over a date range."""
    visitors: int = 0
    impressions: int = 0
    clicks: int = 0
    orders: int = 0
    revenue: Decimal = Decimal("0.00")


class VariantMetrics(BaseModel):
    variant_id: int
    variant_name: str
    is_control: bool

    # Traffic
    visitors: int
    impressions: int
    clicks: int

    # Conversions; conversions mirrors orders
    orders: int
    conversions: int

    # Revenue; total_revenue mirrors revenue
    revenue: float
    total_revenue: float

    conversion_rate: float       # CVR, percent
    click_through_rate: float    # CTR, percent
    revenue_per_visitor: float   # RPV
    profit_per_visitor: float
    avg_order_value: float       # AOV

    # Null until compared against the control
    confidence_level: float | None = None
    p_value: float | None = None


class VariantComparison(VariantMetrics):
    # Relative change against the control, percent
    conversion_rate_change: float
    revenue_per_visitor_change: float
    profit_per_visitor_change: float
    avg_order_value_change: float

    # Conversion rate confidence interval, percent
    conversion_rate_ci_lower: float
    conversion_rate_ci_upper: float

    estimated_monthly_orders: float
    estimated_monthly_revenue: float


class ExperimentSummary(BaseModel):
    experiment_id: int
    experiment_name: str
    status: str
    started_at: datetime | None = None
    duration_days: int | None = None

    total_visitors: int = 0
    total_orders: int = 0
    total_revenue: float = 0.0

    control_conversion_rate: float = 0.0
    control_revenue_per_visitor: float = 0.0
    control_avg_order_value: float = 0.0

    variants: list[VariantComparison] = Field(default_factory=list)

    winning_variant_id: int | None = None
    winning_variant_improvement: float | None = None
    is_statistically_significant: bool = False


class TimeSeriesDataPoint(BaseModel):
    date: date
    variant_id: int
    variant_name: str | None = None
    visitors: int
    orders: int
    revenue: float
    conversion_rate: float
    revenue_per_visitor: float


class SegmentData(BaseModel):
    """Variant comparisons restricted to one device class."""
    desktop: list[VariantComparison] = Field(default_factory=list)
    mobile: list[VariantComparison] = Field(default_factory=list)


class ExperimentStatsResponse(BaseModel):
    """Schema returned by GET /experiments/{id}/stats."""
    summary: ExperimentSummary
    time_series: list[TimeSeriesDataPoint] = Field(default_factory=list)
    segment_data: SegmentData | None = Field(
        default=None,
        validation_alias=AliasChoices("segment_data", "segmentData"),
        serialization_alias="segmentData",
    )
    report_generated_at: datetime
