"""
Auto-approval rule blueprint.

Routes:
  GET    /auto-approval-rules            – list (filter: category_id)
  POST   /auto-approval-rules            – create rule
  GET    /auto-approval-rules/<rid>      – get rule
  PUT    /auto-approval-rules/<rid>      – update rule
  DELETE /auto-approval-rules/<rid>      – delete rule
"""

from flask import Blueprint, jsonify, request

import eapproval.services.auto_approval as svc
from eapproval.blueprints import json_body, register_error_handlers, tenant_id

auto_approval_bp = Blueprint("auto_approval", __name__, url_prefix="/api/v1")
register_error_handlers(auto_approval_bp)


@auto_approval_bp.route("/auto-approval-rules", methods=["GET"])
def list_rules():
    return jsonify(svc.list_rules(tenant_id(), category_id=request.args.get("category_id", type=int)))


@auto_approval_bp.route("/auto-approval-rules", methods=["POST"])
def create_rule():
    """Create a rule.

    Body: { tenant_id, category_id, name, target_user_ids?, target_department_ids?,
            conditions?: [{type, value, field?}], bypass_approver_ids?,
            delay_seconds?, is_active? }
    """
    return jsonify(svc.create_rule(tenant_id(), json_body())), 201


@auto_approval_bp.route("/auto-approval-rules/<int:rid>", methods=["GET"])
def get_rule(rid):
    return jsonify(svc.get_rule(tenant_id(), rid))


@auto_approval_bp.route("/auto-approval-rules/<int:rid>", methods=["PUT"])
def update_rule(rid):
    return jsonify(svc.update_rule(tenant_id(), rid, json_body()))


@auto_approval_bp.route("/auto-approval-rules/<int:rid>", methods=["DELETE"])
def delete_rule(rid):
    svc.delete_rule(tenant_id(), rid)
    return jsonify({"deleted": True, "id": rid})
