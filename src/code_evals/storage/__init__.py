"""SQLite storage for runs, tasks and telemetry."""
