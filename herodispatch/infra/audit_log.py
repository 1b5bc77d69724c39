"""
Audit trail of assignment-changing job events.

Each accept, decline and status transition is one INFO record on the
"audit" logger, carrying ``audit_action``, ``job_id`` and ``actor_id``
plus any event fields as record attributes. Route the logger to its own
sink to keep the trail apart from the application log.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(action: str, job_id: str, actor_id: str, **fields: Any) -> None:
    """
    Usage:
        audit_event("job.status", job.id, actor_id, from_status="assigned", to_status="en_route")

    None-valued fields are dropped.
    """
    fields = {k: v for k, v in fields.items() if v is not None}
    rendered = "".join(f" {k}={v}" for k, v in fields.items())
    _audit_logger.info(
        f"AUDIT {action} job={job_id} actor={actor_id}{rendered}",
        extra={"audit_action": action, "job_id": job_id, "actor_id": actor_id, **fields},
    )
