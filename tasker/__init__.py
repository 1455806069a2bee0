"""tasker — scheduling and execution engine for one-time, recurring and triggered tasks."""

__version__ = "0.1.0"
