"""Infrastructure: telemetry, stores and the runtime orchestrator."""
