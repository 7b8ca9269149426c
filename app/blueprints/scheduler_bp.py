"""
Background Job Control Blueprint.

Routes:
  GET    /scheduler/jobs                   – registered jobs with their run records
  GET    /scheduler/jobs/<name>            – one job's run record
  POST   /scheduler/jobs/<name>/trigger    – run a job now (admins)
  PATCH  /scheduler/jobs/<name>/toggle     – enable / disable a job (admins)
"""

import logging

from flask import Blueprint, jsonify, request

from app.middleware.jwt_auth import jwt_required
from app.middleware.permission_required import require_approval_admin
from app.services.scheduler_service import SchedulerService, get_registered_jobs
from app.utils.errors import E, api_error, register_service_error_handlers

logger = logging.getLogger(__name__)

scheduler_bp = Blueprint("scheduler_bp", __name__, url_prefix="/api/v1")
register_service_error_handlers(scheduler_bp)


@scheduler_bp.route("/scheduler/jobs", methods=["GET"])
@jwt_required
def list_scheduled_jobs():
    """List all scheduled jobs with their status."""
    jobs = SchedulerService.list_jobs()
    return jsonify({
        "jobs": jobs,
        "total": len(jobs),
        "scheduler_running": SchedulerService.is_running(),
    })


@scheduler_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
@jwt_required
def get_job_status(job_name):
    """Get status of a specific scheduled job."""
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    status = SchedulerService.get_job_status(job_name)
    if status is None:
        # Registered but never run or toggled yet
        status = {"job_name": job_name, "interval_seconds": SchedulerService.job_interval(job_name),
                  "run_count": 0, "last_run_at": None}
    return jsonify(status)


@scheduler_bp.route("/scheduler/jobs/<job_name>/trigger", methods=["POST"])
@jwt_required
@require_approval_admin
def trigger_job(job_name):
    """Manually trigger a scheduled job."""
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    logger.info("Job %s triggered manually", job_name, extra={"job_name": job_name})
    return jsonify(SchedulerService.run_job(job_name))


@scheduler_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
@jwt_required
@require_approval_admin
def toggle_job_status(job_name):
    """Enable or disable a scheduled job."""
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if not isinstance(enabled, bool):
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    result = SchedulerService.toggle_job(job_name, enabled)
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")

    return jsonify(result)
