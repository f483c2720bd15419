from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import datetime
from typing import Literal
import json

# --- Pydantic Models for Requests/Responses ---

ExperimentStatus = Literal["draft", "running", "paused", "completed", "archived"]
AssignmentMethod = Literal["hash", "manual", "override"]


class VariantConfig(BaseModel):
    """Rendering configuration of a variant. Bump schema_version when the shape changes."""
    schema_version: Literal[1] = 1
    path: str | None = Field(default=None, description="Page path the variant renders on, e.g. '/products/tee'.")
    parameters: dict[str, str | int | float | bool] = Field(default_factory=dict)


class TargetingRules(BaseModel):
    """Audience an experiment applies to. Stored with the experiment, evaluated by the storefront."""
    schema_version: Literal[1] = 1
    device_types: list[Literal["desktop", "mobile", "tablet"]] = Field(default_factory=list)
    countries: list[str] = Field(default_factory=list, description="ISO 3166-1 alpha-2 codes; empty means all.")
    new_visitors_only: bool = False


class VariantCreate(BaseModel):
    """Defines a variant and its traffic weight."""
    name: str = Field(..., min_length=1, description="Unique name within the experiment (e.g. 'variant_a').")
    display_name: str = Field(..., min_length=1, description="Human readable name (e.g. 'Green Button').")
    is_control: bool = False
    weight: int = Field(..., ge=0, le=100, description="Traffic percentage; all weights must sum to 100.")
    config: VariantConfig = Field(default_factory=VariantConfig)


class ExperimentCreate(BaseModel):
    """Schema for creating a new experiment via POST /experiments."""
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    hypothesis: str | None = None
    targeting_rules: TargetingRules = Field(default_factory=TargetingRules)
    variants: list[VariantCreate] = Field(..., min_length=2)

    @model_validator(mode="after")
    def check_variants(self):
        total_weight = sum(v.weight for v in self.variants)
        if total_weight != 100:
            raise ValueError(f"Total variant weight must equal 100, got {total_weight}")
        if sum(1 for v in self.variants if v.is_control) != 1:
            raise ValueError("Exactly one variant must be marked as control")
        names = [v.name for v in self.variants]
        if len(set(names)) != len(names):
            raise ValueError("Variant names must be unique within an experiment")
        return self


class VariantResponse(BaseModel):
    id: int
    experiment_id: int
    name: str
    display_name: str
    is_control: bool
    weight: int
    config: VariantConfig = Field(default_factory=VariantConfig, validation_alias=AliasChoices("config", "config_json"))

    model_config = ConfigDict(from_attributes=True)

    @field_validator("config", mode="before")
    @classmethod
    def parse_config(cls, value):
        if value is None:
            return VariantConfig()
        if isinstance(value, str):
            return json.loads(value)
        return value


class ExperimentResponse(BaseModel):
    """Experiment definition with its variants. Also the shape kept in the definition cache."""
    id: int
    name: str
    description: str | None = None
    hypothesis: str | None = None
    status: ExperimentStatus
    targeting_rules: TargetingRules = Field(default_factory=TargetingRules, validation_alias=AliasChoices("targeting_rules", "targeting_rules_json"))
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    variants: list[VariantResponse] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("targeting_rules", mode="before")
    @classmethod
    def parse_targeting_rules(cls, value):
        if value is None:
            return TargetingRules()
        if isinstance(value, str):
            return json.loads(value)
        return value


class ActiveExperimentsResponse(BaseModel):
    """Running experiments with their traffic weights and targeting, read by the storefront before it sends impressions."""
    experiments: list[ExperimentResponse] = Field(default_factory=list)


class AssignmentContext(BaseModel):
    """User context captured once, at the moment of first assignment."""
    user_agent: str | None = None
    device_type: str | None = None
    country: str | None = None
    assignment_method: AssignmentMethod = "hash"


class AssignmentRecord(BaseModel):
    """A (user, experiment) assignment as returned by the registry and GET /experiments/{id}/assignment/{user_id}."""
    user_id: str
    experiment_id: int
    variant_id: int
    assigned_at: datetime | None = None
    assignment_method: str = "hash"
    is_new_visitor: bool | None = None
    device_type: str | None = None
    country: str | None = None

    model_config = ConfigDict(from_attributes=True)


class AssignmentBreakdown(BaseModel):
    """Assignments of one experiment counted by variant, device and visitor type."""
    total: int = 0
    by_variant: dict[int, int] = Field(default_factory=dict)
    # Assignments without a recognised device are counted under "unknown"
    by_device: dict[str, int] = Field(default_factory=dict)
    new_visitors: int = 0
    returning_visitors: int = 0
    unknown_visitor_type: int = 0
