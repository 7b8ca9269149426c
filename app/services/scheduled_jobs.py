"""
ERP Approval Engine
Scheduled Jobs.

Concrete job implementations run by SchedulerService.

Jobs:
    - approval_escalation: flags pending steps that breached their SLA
      (every ESCALATION_INTERVAL_SECONDS, default 300)
    - idempotency_cleanup: deletes expired idempotency keys
      (every IDEMPOTENCY_CLEANUP_INTERVAL_SECONDS, default 3600)
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Approval Escalation
# ═══════════════════════════════════════════════════════════════════════════

@register_job("approval_escalation", interval=300, config_key="ESCALATION_INTERVAL_SECONDS")
def run_approval_escalation(app) -> dict[str, Any]:
    """Escalate pending approval steps that exceeded their matrix SLA."""
    from app.services.escalation import EscalationService

    return EscalationService.run_escalation()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Idempotency Key Cleanup
# ═══════════════════════════════════════════════════════════════════════════

@register_job("idempotency_cleanup", interval=3600, config_key="IDEMPOTENCY_CLEANUP_INTERVAL_SECONDS")
def purge_idempotency_keys(app) -> dict[str, Any]:
    """Delete idempotency keys past their expiry."""
    from app.services.idempotency_service import purge_expired

    removed = purge_expired()
    logger.info("Idempotency cleanup: %d expired key(s) removed", removed)
    return {"removed": removed}
