"""SeaTag telemetry API: ingest device payloads, keep latest state, fan out live updates."""

__version__ = "0.1.0"
