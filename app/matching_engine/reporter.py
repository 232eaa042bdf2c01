"""
Run reporting — structured summaries for maintenance runs and workers.

The dicts built here are returned by the operational endpoints and
Celery tasks, and logged once per run for dashboards / alerting.
"""

from datetime import datetime


def build_maintenance_report(
    run_id: str,
    trigger: str,
    started_at: datetime,
    completed_at: datetime,
    steps: dict[str, dict],
) -> dict:
    """
    Build the report for one maintenance run.

    ``steps`` maps a step name to ``{"status": "ok"|"timeout"|"error", ...}``.
    A run is ``ok`` only when every step is.
    """
    failed = [name for name, step in steps.items() if step.get("status") != "ok"]
    duration = completed_at - started_at

    return {
        "run_id": run_id,
        "trigger": trigger,
        "started_at": started_at.isoformat(),
        "completed_at": completed_at.isoformat(),
        "duration_ms": int(duration.total_seconds() * 1000),
        "status": "ok" if not failed else "degraded",
        "failed_steps": failed,
        "steps": steps,
    }


def summarize_steps(report: dict) -> str:
    """One-line ``name=status`` summary for log output."""
    return ", ".join(
        f"{name}={step.get('status')}" for name, step in report.get("steps", {}).items()
    )
