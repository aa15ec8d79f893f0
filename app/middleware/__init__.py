from app.middleware.telemetry import TelemetryMiddleware  # noqa: F401
