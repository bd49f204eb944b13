"""
WIR Validation Gate — readiness check for Submitted → Recommended.

Pure function over a record snapshot plus the caller's unsaved state; it
never writes. Every deficiency is reported in one pass so the caller can
fix all of them at once.

Rules, per Mandatory item:
    - inspector status PASS or FAIL is required (NA does not satisfy it)
    - tag "measurement"                    -> a numeric value is required
    - tag "evidence" / "document" / "photo" -> at least one attachment,
                                              persisted + staged
Record level:
    - an inspector recommendation must be selected; reported as one
      entry with item_id None and reason "recommendation"

``pending_edits`` shape (all keys optional):
    {
        "items": {item_id: {"status": "PASS", "value": "12.5"}},
        "recommendation": "APPROVE",
        "staged_evidence": {item_id: 2},
    }

Usage:
    from wirflow.services.validation_gate import check_readiness

    result = check_readiness(record, {"recommendation": "APPROVE"})
    if not result.ok:
        raise ValidationError("Not ready", missing=result.missing)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from wirflow.models.wir import EVIDENCE_TAGS, MEASUREMENT_TAG, RECOMMENDATIONS

REASON_STATUS = "status"
REASON_MEASUREMENT = "measurement"
REASON_EVIDENCE = "evidence"
REASON_RECOMMENDATION = "recommendation"

_DECIDED_STATUSES = frozenset({"PASS", "FAIL"})


def parse_measurement(value) -> float | None:
    """Parse a measurement into a finite float; None if absent or not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


@dataclass
class GateResult:
    """Outcome of a readiness check."""
    ok: bool
    missing: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"ok": self.ok, "missing": list(self.missing)}


def check_readiness(record, pending_edits: dict | None = None) -> GateResult:
    """Evaluate whether ``record`` may be sent to the HOD."""
    pending = pending_edits or {}
    item_edits = pending.get("items") or {}
    staged = pending.get("staged_evidence") or {}

    missing: list[dict] = []
    for item in record.items:
        if not item.is_mandatory:
            continue
        edit = item_edits.get(item.id) or {}
        tags = item.tags

        status = edit["status"] if "status" in edit else item.inspector_status
        if status not in _DECIDED_STATUSES:
            missing.append({"item_id": item.id, "reason": REASON_STATUS})

        if MEASUREMENT_TAG in tags:
            value = edit["value"] if "value" in edit else item.latest_value
            if parse_measurement(value) is None:
                missing.append({"item_id": item.id, "reason": REASON_MEASUREMENT})

        if tags & EVIDENCE_TAGS:
            attached = len(item.evidences) + int(staged.get(item.id, 0) or 0)
            if attached < 1:
                missing.append({"item_id": item.id, "reason": REASON_EVIDENCE})

    recommendation = pending.get("recommendation") or record.inspector_recommendation
    if recommendation not in RECOMMENDATIONS:
        missing.append({"item_id": None, "reason": REASON_RECOMMENDATION})

    return GateResult(ok=not missing, missing=missing)
