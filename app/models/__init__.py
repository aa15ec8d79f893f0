from app.models.experiment import (  # noqa: F401
    AppliedOptimization,
    Arm,
    Experiment,
    ExperimentResult,
    ExperimentStatus,
    VisitorAssignment,
)
