from __future__ import annotations

from postureledger.services.compliance.checks import CHECKS, CONTROL_CATALOG, CheckDefinition, get_check
from postureledger.services.compliance.control_status import (
    aggregate_control_status,
    classify_pass_rate,
    recompute_control_statuses,
)
from postureledger.services.compliance.data_source import CachedDataSource, NoData, RunCache
from postureledger.services.compliance.engine import (
    RunSummary,
    process_device_checkin,
    run_automated_tests,
    run_repository_scan,
)
from postureledger.services.compliance.evaluator import EvaluationContext, RuleEvaluator, Verdict
from postureledger.services.compliance.evidence import content_hash, record_evidence
from postureledger.services.compliance.risks import reconcile_risk
from postureledger.services.compliance.task_status import compute_display_status


__all__ = [
    "CHECKS",
    "CONTROL_CATALOG",
    "CachedDataSource",
    "CheckDefinition",
    "EvaluationContext",
    "NoData",
    "RuleEvaluator",
    "RunCache",
    "RunSummary",
    "Verdict",
    "aggregate_control_status",
    "classify_pass_rate",
    "compute_display_status",
    "content_hash",
    "get_check",
    "process_device_checkin",
    "reconcile_risk",
    "record_evidence",
    "recompute_control_statuses",
    "run_automated_tests",
    "run_repository_scan",
]
