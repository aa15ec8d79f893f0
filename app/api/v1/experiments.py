from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.experiment import Experiment
from app.models.schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    AssignVariantRequest,
    AssignVariantResponse,
    CreateExperimentRequest,
    CreateExperimentResponse,
    ExperimentDetail,
    ExperimentListResponse,
    ExperimentResponse,
    RecordResultRequest,
    RecordResultResponse,
    StatisticalAnalysisResponse,
    StatusChangeRequest,
    StatusChangeResponse,
)
from app.services.experiments.completion import CompletionQueue
from app.services.experiments.errors import ValidationError
from app.services.experiments.service import ExperimentService, get_completion_queue
from app.services.experiments.stats import StatisticalAnalysis

router = APIRouter()


def to_analysis_response(analysis: StatisticalAnalysis) -> StatisticalAnalysisResponse:
    return StatisticalAnalysisResponse(
        statistical_significance=analysis.statistical_significance,
        **analysis.to_dict(),
    )


async def to_detail(service: ExperimentService, experiment: Experiment) -> ExperimentDetail:
    recorded = await service.count_recorded_conversions(experiment.id)
    return ExperimentDetail(
        experiment=ExperimentResponse.model_validate(experiment),
        analysis=to_analysis_response(service.analyze_experiment(experiment)),
        recorded_control_conversions=recorded["control"],
        recorded_variant_conversions=recorded["variant"],
    )


@router.post("", response_model=CreateExperimentResponse, status_code=201)
async def create_experiment(request: CreateExperimentRequest, db: AsyncSession = Depends(get_db)):
    service = ExperimentService(db)
    experiment = await service.create_experiment(
        site_id=request.site_id,
        name=request.name,
        control_content=request.control_content,
        variant_content=request.variant_content,
        test_type=request.test_type,
        traffic_split=request.traffic_split.model_dump() if request.traffic_split else None,
        status=request.status,
    )

    return CreateExperimentResponse(
        experiment_id=experiment.id,
        status=experiment.status,
        traffic_split=experiment.traffic_split,
    )


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    site_id: str = Query(..., description="Site whose experiments to list"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    service = ExperimentService(db)
    experiments = await service.list_experiments(site_id=site_id, limit=limit, offset=offset)

    details = [await to_detail(service, e) for e in experiments]
    return ExperimentListResponse(experiments=details, total=len(details))


@router.post("/assign", response_model=AssignVariantResponse)
async def assign_variant(request: AssignVariantRequest, db: AsyncSession = Depends(get_db)):
    service = ExperimentService(db)
    assignment = await service.assign_variant(
        site_id=request.site_id, visitor_id=request.visitor_id, test_type=request.test_type
    )

    return AssignVariantResponse(
        variant=assignment.variant,
        content=assignment.content,
        experiment_id=assignment.experiment_id,
        experiment_name=assignment.experiment_name,
    )


@router.post("/results", response_model=RecordResultResponse)
async def record_result(request: RecordResultRequest, db: AsyncSession = Depends(get_db)):
    service = ExperimentService(db)
    result = await service.record_result(
        experiment_id=request.experiment_id,
        visitor_id=request.visitor_id,
        session_id=request.session_id,
        variant=request.variant,
        converted=request.converted,
        conversion_value=request.conversion_value,
    )

    return RecordResultResponse(result_id=result.id)


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze_experiments(
    request: Optional[AnalyzeRequest] = None,
    db: AsyncSession = Depends(get_db),
    completion_queue: CompletionQueue = Depends(get_completion_queue),
):
    request = request or AnalyzeRequest()
    service = ExperimentService(db, completion_queue=completion_queue)

    if request.experiment_id:
        analyses = [await service.analyze(request.experiment_id)]
    else:
        analyses = await service.analyze_active_experiments(site_id=request.site_id)

    return AnalyzeResponse(
        analyses=[to_analysis_response(a) for a in analyses], total_tests=len(analyses)
    )


@router.get("/{experiment_id}", response_model=ExperimentDetail)
async def get_experiment(experiment_id: str, db: AsyncSession = Depends(get_db)):
    service = ExperimentService(db)
    experiment = await service.require_experiment(experiment_id)
    return await to_detail(service, experiment)


@router.post("/{experiment_id}/status", response_model=StatusChangeResponse)
async def change_status(
    experiment_id: str, request: StatusChangeRequest, db: AsyncSession = Depends(get_db)
):
    if not request.action:
        raise ValidationError("action is required")

    service = ExperimentService(db)
    experiment = await service.set_status(experiment_id, request.action)

    return StatusChangeResponse(experiment_id=experiment.id, new_status=experiment.status)
