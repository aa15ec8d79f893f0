import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.cache import get_redis
from app.core.database import async_session_maker
from app.models.experiment import (
    AppliedOptimization,
    Arm,
    Experiment,
    ExperimentResult,
    ExperimentStatus,
    VisitorAssignment,
    utcnow,
)
from app.services.experiments.bucketing import choose_variant
from app.services.experiments.completion import (
    BackgroundCompletionQueue,
    CompletionJob,
    CompletionQueue,
    RedisCompletionQueue,
)
from app.services.experiments.errors import (
    InvalidActionError,
    NotFoundError,
    PersistenceError,
    StateTransitionError,
    ValidationError,
)
from app.services.experiments.stats import (
    RecommendedAction,
    StatisticalAnalysis,
    VariantData,
    analyze_experiment,
)

logger = structlog.get_logger("experiments")

DEFAULT_TRAFFIC_SPLIT = {"control": 50, "variant": 50}
DEFAULT_TEST_TYPE = "content"

STATUS_ACTIONS = {
    "pause": ExperimentStatus.PAUSED,
    "resume": ExperimentStatus.ACTIVE,
    "start": ExperimentStatus.ACTIVE,
    "cancel": ExperimentStatus.CANCELLED,
    "complete": ExperimentStatus.COMPLETED,
}

ALLOWED_TRANSITIONS = {
    ExperimentStatus.DRAFT: {ExperimentStatus.ACTIVE, ExperimentStatus.CANCELLED},
    ExperimentStatus.ACTIVE: {
        ExperimentStatus.PAUSED,
        ExperimentStatus.COMPLETED,
        ExperimentStatus.CANCELLED,
    },
    ExperimentStatus.PAUSED: {ExperimentStatus.ACTIVE, ExperimentStatus.CANCELLED},
    ExperimentStatus.COMPLETED: set(),
    ExperimentStatus.CANCELLED: set(),
}

# Statuses in which conversions still count towards the aggregates
COUNTING_STATUSES = (ExperimentStatus.ACTIVE, ExperimentStatus.PAUSED)


@dataclass
class VariantAssignment:
    variant: Arm
    content: Optional[str]
    experiment_id: Optional[str]
    experiment_name: Optional[str] = None
    is_new: bool = False


def _visitor_column(arm: Arm):
    return Experiment.control_visitors if arm == Arm.CONTROL else Experiment.variant_visitors


def _conversion_column(arm: Arm):
    return Experiment.control_conversions if arm == Arm.CONTROL else Experiment.variant_conversions


def _validate_traffic_split(traffic_split: Optional[Mapping[str, Any]]) -> Dict[str, int]:
    if traffic_split is None:
        return dict(DEFAULT_TRAFFIC_SPLIT)

    try:
        control = traffic_split["control"]
        variant = traffic_split["variant"]
    except (KeyError, TypeError):
        raise ValidationError("traffic_split must define 'control' and 'variant'")

    for value in (control, variant):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError("traffic_split values must be non-negative integers")

    if control + variant != 100:
        raise ValidationError("traffic_split values must sum to 100")

    return {"control": control, "variant": variant}


def _check_encodable(**fields: Optional[str]) -> None:
    """Reject text the store cannot hold, such as ids carrying lone surrogates."""
    for name, value in fields.items():
        if value is None:
            continue
        try:
            value.encode("utf-8")
        except UnicodeEncodeError:
            raise ValidationError(f"{name} must be valid Unicode text")


class ExperimentService:
    def __init__(self, db: AsyncSession, completion_queue: Optional[CompletionQueue] = None):
        self.db = db
        self.completion_queue = completion_queue
        self.settings = get_settings()

    @asynccontextmanager
    async def _persistence(self, operation: str):
        try:
            yield
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("persistence_failed", operation=operation, error=str(e))
            raise PersistenceError(f"Failed to {operation}") from e

    # Lifecycle

    async def create_experiment(
        self,
        site_id: Optional[str],
        name: Optional[str],
        control_content: Optional[str],
        variant_content: Optional[str],
        test_type: Optional[str] = None,
        traffic_split: Optional[Mapping[str, Any]] = None,
        status: ExperimentStatus = ExperimentStatus.ACTIVE,
    ) -> Experiment:
        if not site_id or not name or not control_content or not variant_content:
            raise ValidationError(
                "site_id, name, control_content and variant_content are required"
            )
        _check_encodable(
            site_id=site_id,
            name=name,
            control_content=control_content,
            variant_content=variant_content,
            test_type=test_type,
        )

        status = ExperimentStatus(status)
        if status not in (ExperimentStatus.ACTIVE, ExperimentStatus.DRAFT):
            raise ValidationError("Experiments can only be created as 'active' or 'draft'")

        now = utcnow()
        experiment = Experiment(
            id=str(uuid.uuid4()),
            site_id=site_id,
            name=name,
            test_type=test_type or DEFAULT_TEST_TYPE,
            control_content=control_content,
            variant_content=variant_content,
            traffic_split=_validate_traffic_split(traffic_split),
            start_date=now,
            status=status,
            control_visitors=0,
            variant_visitors=0,
            control_conversions=0,
            variant_conversions=0,
            created_at=now,
            updated_at=now,
        )

        async with self._persistence("create experiment"):
            self.db.add(experiment)
            await self.db.commit()
            await self.db.refresh(experiment)

        logger.info(
            "experiment_created",
            experiment_id=experiment.id,
            site_id=site_id,
            test_type=experiment.test_type,
            traffic_split=experiment.traffic_split,
        )

        return experiment

    async def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        async with self._persistence("load experiment"):
            return await self.db.get(Experiment, experiment_id, populate_existing=True)

    async def require_experiment(self, experiment_id: Optional[str]) -> Experiment:
        if not experiment_id:
            raise ValidationError("experiment_id is required")

        experiment = await self.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    async def list_experiments(
        self,
        site_id: Optional[str] = None,
        status: Optional[ExperimentStatus] = None,
        test_type: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Experiment]:
        # Counter writes bypass the identity map, so reload rows already in the session
        query = (
            select(Experiment)
            .order_by(Experiment.created_at.desc())
            .offset(offset)
            .execution_options(populate_existing=True)
        )

        if site_id:
            query = query.where(Experiment.site_id == site_id)
        if status:
            query = query.where(Experiment.status == status)
        if test_type:
            query = query.where(Experiment.test_type == test_type)
        if limit:
            query = query.limit(limit)

        async with self._persistence("list experiments"):
            result = await self.db.execute(query)
            return list(result.scalars().all())

    async def set_status(self, experiment_id: Optional[str], action: Optional[str]) -> Experiment:
        if not experiment_id or not action:
            raise ValidationError("experiment_id and action are required")

        target = STATUS_ACTIONS.get(action)
        if target is None:
            raise InvalidActionError(
                f"Invalid action '{action}'. Expected one of: {', '.join(STATUS_ACTIONS)}"
            )

        experiment = await self.require_experiment(experiment_id)
        current = experiment.status

        if current == target:
            return experiment

        if target not in ALLOWED_TRANSITIONS[current]:
            raise StateTransitionError(
                f"Cannot {action} an experiment that is {current.value}"
            )

        if target == ExperimentStatus.COMPLETED:
            completed = await self.complete_experiment(
                experiment.id, self.analyze_experiment(experiment)
            )
            if completed is None:
                raise StateTransitionError(f"Experiment {experiment_id} is no longer active")
            return completed

        values: Dict[str, Any] = {"status": target, "updated_at": utcnow()}
        if target == ExperimentStatus.CANCELLED:
            values["end_date"] = values["updated_at"]
        elif current == ExperimentStatus.DRAFT:
            # Traffic starts when the draft goes live, not when it was written
            values["start_date"] = values["updated_at"]

        async with self._persistence("update experiment status"):
            result = await self.db.execute(
                update(Experiment)
                .where(Experiment.id == experiment.id, Experiment.status == current)
                .values(values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Nothing was written. Committing keeps loaded objects usable.
                await self.db.commit()
                raise StateTransitionError(f"Experiment {experiment_id} changed concurrently")
            await self.db.commit()

        logger.info(
            "experiment_status_changed",
            experiment_id=experiment.id,
            action=action,
            from_status=current.value,
            to_status=target.value,
        )

        return await self.require_experiment(experiment.id)

    async def complete_experiment(
        self, experiment_id: str, analysis: StatisticalAnalysis
    ) -> Optional[Experiment]:
        """
        Mark an active experiment completed and record the winner.

        Returns None when the experiment was not active anymore, e.g. because
        a concurrent sweep already completed it.
        """
        winner = Arm.VARIANT if analysis.variant_rate > analysis.control_rate else Arm.CONTROL
        now = utcnow()

        async with self._persistence("complete experiment"):
            result = await self.db.execute(
                update(Experiment)
                .where(Experiment.id == experiment_id, Experiment.status == ExperimentStatus.ACTIVE)
                .values(
                    status=ExperimentStatus.COMPLETED,
                    winner_variant=winner,
                    confidence_level=analysis.confidence_level,
                    statistical_significance=analysis.p_value,
                    improvement_percentage=analysis.improvement_percentage,
                    end_date=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                await self.db.commit()
                logger.info("experiment_completion_skipped", experiment_id=experiment_id)
                return None

            experiment = await self.db.get(Experiment, experiment_id, populate_existing=True)

            applied = (
                winner == Arm.VARIANT
                and analysis.improvement_percentage > self.settings.AUTO_APPLY_MIN_IMPROVEMENT
            )
            if applied:
                self.db.add(
                    AppliedOptimization(
                        id=str(uuid.uuid4()),
                        site_id=experiment.site_id,
                        experiment_id=experiment.id,
                        optimization_type=experiment.test_type,
                        original_content=experiment.control_content,
                        optimized_content=experiment.variant_content,
                        improvement_percentage=analysis.improvement_percentage,
                        applied_at=now,
                    )
                )

            await self.db.commit()

        logger.info(
            "experiment_completed",
            experiment_id=experiment_id,
            winner=winner.value,
            improvement_percentage=round(analysis.improvement_percentage, 2),
            p_value=analysis.p_value,
            optimization_applied=applied,
        )

        return experiment

    # Assignment

    async def find_active_experiment(
        self, site_id: str, test_type: Optional[str] = None
    ) -> Optional[Experiment]:
        if self.settings.EXPERIMENT_SELECTION_POLICY == "oldest":
            order = Experiment.created_at.asc()
        else:
            order = Experiment.created_at.desc()

        query = (
            select(Experiment)
            .where(Experiment.site_id == site_id, Experiment.status == ExperimentStatus.ACTIVE)
            .order_by(order)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        if test_type:
            query = query.where(Experiment.test_type == test_type)

        async with self._persistence("find active experiment"):
            result = await self.db.execute(query)
            return result.scalar_one_or_none()

    async def assign_variant(
        self, site_id: Optional[str], visitor_id: Optional[str], test_type: Optional[str] = None
    ) -> VariantAssignment:
        """Assign a visitor to the site's running experiment, if any."""
        if not site_id or not visitor_id:
            raise ValidationError("site_id and visitor_id are required")
        _check_encodable(site_id=site_id, visitor_id=visitor_id, test_type=test_type)

        experiment = await self.find_active_experiment(site_id, test_type)
        if experiment is None:
            return VariantAssignment(variant=Arm.CONTROL, content=None, experiment_id=None)

        return await self.assign_visitor(experiment.id, visitor_id, experiment=experiment)

    async def _find_assignment(
        self, experiment_id: str, visitor_id: str
    ) -> Optional[VisitorAssignment]:
        result = await self.db.execute(
            select(VisitorAssignment).where(
                VisitorAssignment.experiment_id == experiment_id,
                VisitorAssignment.visitor_id == visitor_id,
            )
        )
        return result.scalar_one_or_none()

    async def assign_visitor(
        self,
        experiment_id: Optional[str],
        visitor_id: Optional[str],
        experiment: Optional[Experiment] = None,
    ) -> VariantAssignment:
        """
        Idempotently assign a visitor to an arm of an experiment.

        The assignment row and the visitor counter increment commit together.
        When two requests for the same visitor race, the unique constraint
        rejects the second insert and it returns the winner's assignment.
        """
        if not visitor_id:
            raise ValidationError("visitor_id is required")
        _check_encodable(visitor_id=visitor_id)
        if experiment is None:
            experiment = await self.require_experiment(experiment_id)

        experiment_id = experiment.id

        async with self._persistence("assign visitor"):
            existing = await self._find_assignment(experiment_id, visitor_id)
            if existing is not None:
                return VariantAssignment(
                    variant=existing.variant,
                    content=experiment.content_for(existing.variant),
                    experiment_id=experiment_id,
                    experiment_name=experiment.name,
                )

            if experiment.status != ExperimentStatus.ACTIVE:
                raise StateTransitionError(
                    f"Experiment {experiment_id} is {experiment.status.value}, not active"
                )

            arm = choose_variant(visitor_id, experiment.traffic_split)
            column = _visitor_column(arm)

            try:
                result = await self.db.execute(
                    update(Experiment)
                    .where(
                        Experiment.id == experiment_id,
                        Experiment.status == ExperimentStatus.ACTIVE,
                    )
                    .values({column.key: column + 1, "updated_at": utcnow()})
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await self.db.commit()
                    raise StateTransitionError(f"Experiment {experiment_id} is no longer active")

                # The insert is flushed on commit; a duplicate undoes the increment too
                self.db.add(
                    VisitorAssignment(
                        id=str(uuid.uuid4()),
                        experiment_id=experiment_id,
                        visitor_id=visitor_id,
                        variant=arm,
                        assigned_at=utcnow(),
                    )
                )
                await self.db.commit()

            except IntegrityError:
                await self.db.rollback()
                existing = await self._find_assignment(experiment_id, visitor_id)
                if existing is None:
                    raise
                experiment = await self.db.get(Experiment, experiment_id, populate_existing=True)
                logger.info(
                    "visitor_assignment_race",
                    experiment_id=experiment_id,
                    visitor_id=visitor_id,
                )
                return VariantAssignment(
                    variant=existing.variant,
                    content=experiment.content_for(existing.variant),
                    experiment_id=experiment_id,
                    experiment_name=experiment.name,
                )

        logger.info(
            "visitor_assigned",
            experiment_id=experiment_id,
            visitor_id=visitor_id,
            variant=arm.value,
        )

        return VariantAssignment(
            variant=arm,
            content=experiment.content_for(arm),
            experiment_id=experiment_id,
            experiment_name=experiment.name,
            is_new=True,
        )

    # Results

    async def record_result(
        self,
        experiment_id: Optional[str],
        visitor_id: Optional[str],
        session_id: Optional[str],
        variant: Optional[str],
        converted: bool = False,
        conversion_value: Optional[float] = 0.0,
    ) -> ExperimentResult:
        if not experiment_id or not visitor_id or not variant:
            raise ValidationError("experiment_id, visitor_id and variant are required")
        _check_encodable(experiment_id=experiment_id, visitor_id=visitor_id, session_id=session_id)

        try:
            arm = Arm(variant)
        except ValueError:
            raise ValidationError(f"variant must be 'control' or 'variant', got '{variant}'")

        experiment = await self.require_experiment(experiment_id)

        event = ExperimentResult(
            id=str(uuid.uuid4()),
            experiment_id=experiment.id,
            visitor_id=visitor_id,
            session_id=session_id,
            variant=arm,
            converted=bool(converted),
            conversion_value=conversion_value or 0.0,
            created_at=utcnow(),
        )

        counted = False
        async with self._persistence("record result"):
            self.db.add(event)

            if converted and experiment.status in COUNTING_STATUSES:
                conversions = _conversion_column(arm)
                visitors = _visitor_column(arm)
                # Conversions can never overtake visitors for the same arm
                result = await self.db.execute(
                    update(Experiment)
                    .where(
                        Experiment.id == experiment.id,
                        Experiment.status.in_(COUNTING_STATUSES),
                        conversions < visitors,
                    )
                    .values({conversions.key: conversions + 1, "updated_at": utcnow()})
                    .execution_options(synchronize_session=False)
                )
                counted = result.rowcount > 0

            await self.db.commit()

        if converted and not counted:
            logger.warning(
                "conversion_not_counted",
                experiment_id=experiment.id,
                visitor_id=visitor_id,
                variant=arm.value,
                status=experiment.status.value,
            )

        logger.info(
            "result_recorded",
            experiment_id=experiment.id,
            visitor_id=visitor_id,
            variant=arm.value,
            converted=bool(converted),
        )

        return event

    async def count_recorded_conversions(self, experiment_id: str) -> Dict[str, int]:
        """Conversions per arm recomputed from the result events."""
        query = (
            select(ExperimentResult.variant, func.count(ExperimentResult.id))
            .where(
                ExperimentResult.experiment_id == experiment_id,
                ExperimentResult.converted.is_(True),
            )
            .group_by(ExperimentResult.variant)
        )

        async with self._persistence("count conversions"):
            result = await self.db.execute(query)
            counts = {arm.value: 0 for arm in Arm}
            for arm, count in result.all():
                counts[Arm(arm).value] = count
            return counts

    # Analysis

    def analyze_experiment(
        self, experiment: Experiment, now: Optional[datetime] = None
    ) -> StatisticalAnalysis:
        control = VariantData(
            name=Arm.CONTROL.value,
            visitors=experiment.control_visitors or 0,
            conversions=experiment.control_conversions or 0,
        )
        variant = VariantData(
            name=Arm.VARIANT.value,
            visitors=experiment.variant_visitors or 0,
            conversions=experiment.variant_conversions or 0,
        )

        return analyze_experiment(
            control=control,
            variant=variant,
            start_date=experiment.start_date,
            experiment_id=experiment.id,
            now=now,
        )

    async def analyze(
        self, experiment_id: Optional[str], now: Optional[datetime] = None
    ) -> StatisticalAnalysis:
        experiment = await self.require_experiment(experiment_id)
        return self.analyze_experiment(experiment, now)

    async def analyze_active_experiments(
        self, site_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> List[StatisticalAnalysis]:
        """
        Analyze every active experiment, optionally scoped to one site.

        Experiments whose analysis recommends declaring a winner are handed to
        the completion queue; the returned analyses do not wait for that.
        """
        experiments = await self.list_experiments(site_id=site_id, status=ExperimentStatus.ACTIVE)

        analyses = []
        for experiment in experiments:
            analysis = self.analyze_experiment(experiment, now)
            analyses.append(analysis)

            if analysis.recommended_action == RecommendedAction.DECLARE_WINNER:
                await self._schedule_completion(analysis)

        logger.info(
            "experiments_analyzed",
            site_id=site_id,
            total=len(analyses),
            winners=sum(
                1 for a in analyses if a.recommended_action == RecommendedAction.DECLARE_WINNER
            ),
        )

        return analyses

    async def _schedule_completion(self, analysis: StatisticalAnalysis) -> None:
        queue = self.completion_queue or get_background_queue()
        job = CompletionJob(experiment_id=analysis.experiment_id, analysis=analysis)

        try:
            submitted = await queue.submit(job)
        except Exception as e:
            logger.error(
                "completion_submit_failed",
                experiment_id=analysis.experiment_id,
                error=str(e),
            )
            return

        if not submitted:
            logger.warning("completion_not_queued", experiment_id=analysis.experiment_id)


async def run_completion_job(job: CompletionJob, session_factory=None) -> Optional[Experiment]:
    """Complete one experiment in its own session, outside the request that queued it."""
    session_factory = session_factory or async_session_maker
    async with session_factory() as session:
        service = ExperimentService(session)
        return await service.complete_experiment(job.experiment_id, job.analysis)


_background_queue: Optional[BackgroundCompletionQueue] = None


def get_background_queue() -> BackgroundCompletionQueue:
    global _background_queue
    if _background_queue is None:
        _background_queue = BackgroundCompletionQueue(run_completion_job)
    return _background_queue


async def get_completion_queue() -> CompletionQueue:
    """Dependency for the configured completion queue"""
    settings = get_settings()
    if settings.COMPLETION_BACKEND == "redis":
        redis = await get_redis()
        return RedisCompletionQueue(redis, settings.COMPLETION_QUEUE_KEY)
    return get_background_queue()
