"""
JSON plan / apply report generator.
"""
import json
from datetime import datetime, timezone
from typing import Optional

from stackplan import __version__
from stackplan.models.plan import ApplyResult, Plan


def _meta(source_path: str) -> dict:
    return {
        "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "source": source_path,
        "tool": "stackplan",
        "version": __version__,
    }


def build_report(plan: Plan, source_path: str, result: Optional[ApplyResult] = None) -> str:
    report = {
        "meta": _meta(source_path),
        "summary": plan.counts(),
        "actions": [a.to_dict() for a in plan],
    }
    if result is not None:
        report["result"] = {
            "ok": result.ok,
            "cancelled": result.cancelled,
            "succeeded": len(result.succeeded),
            "failed": len(result.failed),
            "not_attempted": len(result.not_attempted),
            "outcomes": [o.to_dict() for o in result.outcomes],
        }
    return json.dumps(report, indent=2, default=str)
