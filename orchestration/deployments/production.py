from orchestration.flows.experiment_sweep import experiment_sweep

SWEEP_CRON = "*/15 * * * *"


if __name__ == "__main__":
    experiment_sweep.serve(
        name="experiment-sweep-scheduled",
        cron=SWEEP_CRON,
        tags=["production", "scheduled", "experiments"],
    )
