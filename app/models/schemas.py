from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from app.models.experiment import Arm, ExperimentStatus
from app.services.experiments.stats import RecommendedAction


class TrafficSplit(BaseModel):
    control: int = 50
    variant: int = 50


class CreateExperimentRequest(BaseModel):
    site_id: Optional[str] = None
    name: Optional[str] = Field(None, max_length=200)
    test_type: Optional[str] = Field(None, description="Free-form tag, e.g. 'headline', 'cta'")
    control_content: Optional[str] = None
    variant_content: Optional[str] = None
    traffic_split: Optional[TrafficSplit] = None
    status: ExperimentStatus = Field(
        ExperimentStatus.ACTIVE, description="Initial status: 'active' or 'draft'"
    )


class CreateExperimentResponse(BaseModel):
    experiment_id: str
    status: ExperimentStatus
    traffic_split: TrafficSplit


class AssignVariantRequest(BaseModel):
    site_id: Optional[str] = None
    visitor_id: Optional[str] = None
    test_type: Optional[str] = None


class AssignVariantResponse(BaseModel):
    variant: Arm
    content: Optional[str] = None
    experiment_id: Optional[str] = None
    experiment_name: Optional[str] = None


class RecordResultRequest(BaseModel):
    experiment_id: Optional[str] = None
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    variant: Optional[str] = None
    converted: bool = False
    conversion_value: float = Field(0.0, ge=0)


class RecordResultResponse(BaseModel):
    success: bool = True
    recorded: bool = True
    result_id: str


class AnalyzeRequest(BaseModel):
    experiment_id: Optional[str] = Field(None, description="Analyze a single experiment")
    site_id: Optional[str] = Field(None, description="Restrict the sweep to one site")


class StatisticalAnalysisResponse(BaseModel):
    experiment_id: Optional[str]
    control_rate: float
    variant_rate: float
    improvement_percentage: float
    z_score: float
    p_value: float
    statistical_significance: float
    confidence_level: float
    sample_size: int
    is_significant: bool
    min_sample_size: int
    recommended_action: RecommendedAction
    days_to_significance: Optional[int] = None
    control_visitors: int
    variant_visitors: int
    control_conversions: int
    variant_conversions: int
    confidence_interval_lower: float  # Percentage points
    confidence_interval_upper: float
    rationale: str


class AnalyzeResponse(BaseModel):
    success: bool = True
    analyses: List[StatisticalAnalysisResponse]
    total_tests: int


class StatusChangeRequest(BaseModel):
    action: Optional[str] = Field(None, description="pause, resume, cancel or complete")


class StatusChangeResponse(BaseModel):
    success: bool = True
    experiment_id: str
    new_status: ExperimentStatus


class ExperimentResponse(BaseModel):
    id: str
    site_id: str
    name: str
    test_type: str
    control_content: str
    variant_content: str
    traffic_split: TrafficSplit
    status: ExperimentStatus
    winner_variant: Optional[Arm] = None
    confidence_level: Optional[float] = None
    statistical_significance: Optional[float] = None
    improvement_percentage: Optional[float] = None
    control_visitors: int
    variant_visitors: int
    control_conversions: int
    variant_conversions: int
    start_date: datetime
    end_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ExperimentDetail(BaseModel):
    experiment: ExperimentResponse
    analysis: StatisticalAnalysisResponse
    # Recomputed from result events, may differ from the capped counters
    recorded_control_conversions: int
    recorded_variant_conversions: int


class ExperimentListResponse(BaseModel):
    success: bool = True
    experiments: List[ExperimentDetail]
    total: int
