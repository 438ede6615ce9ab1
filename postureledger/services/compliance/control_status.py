from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Literal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.domain.models import CheckResult, Control, Subject
from postureledger.services.compliance.checks import CHECKS, PASS


logger = logging.getLogger(__name__)

ControlStatus = Literal["IMPLEMENTED", "PARTIALLY_IMPLEMENTED", "NOT_IMPLEMENTED"]

_REF_SPLIT = re.compile(r"[,\s;]+")

# Subject status for repositories gone from the source and revoked devices.
REMOVED = "REMOVED"


@dataclass
class PassTally:
    passed: int = 0
    total: int = 0

    @property
    def rate(self) -> float | None:
        return self.passed / self.total if self.total else None


def classify_pass_rate(passed: int, total: int) -> ControlStatus | None:
    if total <= 0:
        return None
    # Integer comparisons keep the 0.5 boundary exact.
    if passed == total:
        return "IMPLEMENTED"
    if passed * 2 >= total:
        return "PARTIALLY_IMPLEMENTED"
    return "NOT_IMPLEMENTED"


def reference_tokens(iso_reference: str) -> set[str]:
    return {token for token in _REF_SPLIT.split(iso_reference or "") if token}


async def tally_by_reference(session: AsyncSession, organization_id: str) -> dict[str, PassTally]:
    """Sum pass/total per control reference over the results of subjects still in scope."""
    result = await session.execute(
        select(CheckResult.check_name, CheckResult.result)
        .join(Subject, Subject.id == CheckResult.subject_id)
        .where(CheckResult.organization_id == organization_id, Subject.status != REMOVED)
    )
    tallies: dict[str, PassTally] = defaultdict(PassTally)
    for check_name, verdict_result in result.all():
        definition = CHECKS.get(check_name)
        if definition is None:
            continue
        for ref in definition.iso_refs:
            tally = tallies[ref]
            tally.total += 1
            # Warning is counted toward total only.
            if verdict_result == PASS:
                tally.passed += 1
    return dict(tallies)


async def aggregate_control_status(
    session: AsyncSession, organization_id: str, control_ref: str
) -> ControlStatus | None:
    tally = (await tally_by_reference(session, organization_id)).get(control_ref)
    if tally is None:
        return None
    return classify_pass_rate(tally.passed, tally.total)


async def recompute_control_statuses(
    session: AsyncSession, organization_id: str, *, commit: bool = True
) -> dict[str, ControlStatus]:
    """Recompute every control of the organization from scratch.

    Controls whose references received no contributions are left untouched.
    """
    tallies = await tally_by_reference(session, organization_id)
    result = await session.execute(select(Control).where(Control.organization_id == organization_id))
    updated: dict[str, ControlStatus] = {}
    for control in result.scalars().all():
        combined = PassTally()
        for ref in reference_tokens(control.iso_reference):
            tally = tallies.get(ref)
            if tally is not None:
                combined.passed += tally.passed
                combined.total += tally.total
        status = classify_pass_rate(combined.passed, combined.total)
        if status is None:
            continue
        if control.status != status:
            logger.info(
                "control_status_changed control=%s from=%s to=%s passed=%s total=%s",
                control.iso_reference,
                control.status,
                status,
                combined.passed,
                combined.total,
            )
            control.status = status
        updated[control.iso_reference] = status
    if commit:
        await session.commit()
    return updated
