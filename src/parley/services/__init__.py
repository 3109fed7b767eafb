"""Service layer helpers (chat flow, persistence, settings, telemetry)."""
