"""
Approval workflow blueprint.

Routes:
  POST   /approvals/submit                  – submit a request
  GET    /approvals/<iid>                   – instance with stage snapshot
  POST   /approvals/<iid>/decide            – approve / reject (X-User-Id acts)
  POST   /approvals/<iid>/cancel            – withdraw (requester only)
  GET    /approvals/pending                 – requests waiting on X-User-Id
  GET    /approvals/mine                    – requests filed by X-User-Id
  GET    /approvals/references              – requests X-User-Id is referenced on
  GET    /approvals/statistics              – counts per status for a period
  POST   /approvals/auto-approvals/run      – run the deferred auto-approval job
  GET    /scheduled-jobs                    – background jobs with last run
  PATCH  /scheduled-jobs/<name>             – pause or resume a job
"""

import logging

from flask import Blueprint, jsonify, request

import eapproval.services.approval_engine as engine
from eapproval.blueprints import acting_user_id, json_body, register_error_handlers, tenant_id
from eapproval.services.scheduler_service import SchedulerService

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval", __name__, url_prefix="/api/v1")
register_error_handlers(approval_bp)


def _optional_tenant():
    return request.args.get("tenant_id", type=int)


@approval_bp.route("/approvals/submit", methods=["POST"])
def submit():
    """Submit a request for approval.

    Body: { tenant_id, category_id, payload, title?,
            explicit_route?: {template_id} | {stages: [...]} }
    """
    data = json_body()
    instance = engine.submit_request(
        tenant_id(),
        acting_user_id(),
        data.get("category_id"),
        data.get("payload"),
        title=data.get("title"),
        explicit_route=data.get("explicit_route"),
    )
    return jsonify(instance), 201


@approval_bp.route("/approvals/<int:iid>", methods=["GET"])
def get_instance(iid):
    return jsonify(engine.get_instance(iid, tenant_id=_optional_tenant()))


@approval_bp.route("/approvals/<int:iid>/decide", methods=["POST"])
def decide(iid):
    """Approve or reject.

    Body: { decision: APPROVED|REJECTED, comment?, stage_index?, expected_version? }
    """
    data = json_body()
    result = engine.decide(
        iid,
        acting_user_id(),
        data.get("decision"),
        data.get("comment"),
        stage_index=data.get("stage_index"),
        expected_version=data.get("expected_version"),
        tenant_id=_optional_tenant(),
    )
    return jsonify(result)


@approval_bp.route("/approvals/<int:iid>/cancel", methods=["POST"])
def cancel(iid):
    data = json_body()
    instance = engine.cancel(
        iid,
        acting_user_id(),
        tenant_id=_optional_tenant(),
        reason=data.get("reason"),
    )
    return jsonify(instance)


@approval_bp.route("/approvals/pending", methods=["GET"])
def pending():
    return jsonify(engine.get_pending_for(acting_user_id(), tenant_id=_optional_tenant()))


@approval_bp.route("/approvals/mine", methods=["GET"])
def mine():
    return jsonify(engine.list_requests_for(
        acting_user_id(),
        tenant_id=_optional_tenant(),
        status=request.args.get("status"),
    ))


@approval_bp.route("/approvals/references", methods=["GET"])
def references():
    return jsonify(engine.list_references_for(acting_user_id(), tenant_id=_optional_tenant()))


@approval_bp.route("/approvals/statistics", methods=["GET"])
def statistics():
    return jsonify(engine.get_statistics(
        tenant_id(),
        period=request.args.get("period", "month"),
        category_id=request.args.get("category_id", type=int),
        requester_id=request.args.get("requester_id", type=int),
    ))


@approval_bp.route("/approvals/auto-approvals/run", methods=["POST"])
def run_auto_approvals():
    """Manually trigger the deferred auto-approval runner."""
    result = SchedulerService.run_job("auto_approval_runner")
    status = 200 if result.get("status") in ("success", "skipped") else 500
    return jsonify(result), status


@approval_bp.route("/scheduled-jobs", methods=["GET"])
def list_jobs():
    return jsonify(SchedulerService.list_jobs())


@approval_bp.route("/scheduled-jobs/<job_name>", methods=["PATCH"])
def pause_job(job_name):
    """Body: { paused: bool }"""
    return jsonify(SchedulerService.set_paused(job_name, bool(json_body().get("paused"))))
