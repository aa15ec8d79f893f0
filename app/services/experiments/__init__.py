"""
Experimentation service module for A/B testing functionality.

This module provides:
- Deterministic visitor bucketing and idempotent assignment
- Result recording with atomic conversion counters
- Statistical analysis (two-proportion z-test, minimum sample size)
- Decision policy with fire-and-forget completion of winning experiments
"""

from app.services.experiments.bucketing import bucket_for_visitor, choose_variant, hash_visitor_id
from app.services.experiments.completion import (
    BackgroundCompletionQueue,
    CompletionJob,
    CompletionQueue,
    RedisCompletionQueue,
)
from app.services.experiments.errors import (
    ExperimentError,
    InvalidActionError,
    NotFoundError,
    PersistenceError,
    StateTransitionError,
    ValidationError,
)
from app.services.experiments.service import ExperimentService, VariantAssignment
from app.services.experiments.stats import (
    RecommendedAction,
    StatisticalAnalysis,
    VariantData,
    analyze_experiment,
    calculate_minimum_sample_size,
    normal_cdf,
    run_proportion_z_test,
)

__all__ = [
    "hash_visitor_id",
    "bucket_for_visitor",
    "choose_variant",
    "CompletionJob",
    "CompletionQueue",
    "BackgroundCompletionQueue",
    "RedisCompletionQueue",
    "ExperimentError",
    "ValidationError",
    "NotFoundError",
    "InvalidActionError",
    "StateTransitionError",
    "PersistenceError",
    "ExperimentService",
    "VariantAssignment",
    "RecommendedAction",
    "StatisticalAnalysis",
    "VariantData",
    "analyze_experiment",
    "calculate_minimum_sample_size",
    "normal_cdf",
    "run_proportion_z_test",
]
