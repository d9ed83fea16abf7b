"""
Route Template Store blueprint.

Routes:
  GET    /route-templates                          – list (filter: category_id, active)
  POST   /route-templates                          – create with stages
  GET    /route-templates/<tid>                    – get with stages
  PUT    /route-templates/<tid>                    – update attributes
  DELETE /route-templates/<tid>                    – delete (blocked while in use)
  PUT    /route-templates/<tid>/stages             – replace all stages
  POST   /route-templates/<tid>/stages             – insert stage (body: order_index?)
  DELETE /route-templates/<tid>/stages/<index>     – delete stage, re-index
"""

from flask import Blueprint, jsonify, request

import eapproval.services.route_template_service as svc
from eapproval.blueprints import json_body, register_error_handlers, tenant_id

route_template_bp = Blueprint("route_template", __name__, url_prefix="/api/v1")
register_error_handlers(route_template_bp)


@route_template_bp.route("/route-templates", methods=["GET"])
def list_templates():
    return jsonify(svc.list_templates(
        tenant_id(),
        category_id=request.args.get("category_id", type=int),
        include_inactive=request.args.get("active") != "true",
    ))


@route_template_bp.route("/route-templates", methods=["POST"])
def create_template():
    """Create a template.

    Body: { tenant_id, name, category_id?, is_default?, is_active?,
            agreement_policy?, stages: [{name, stage_type, mode,
            approvers: [{user_id, is_required}]}] }
    """
    return jsonify(svc.create_template(tenant_id(), json_body())), 201


@route_template_bp.route("/route-templates/<int:tid>", methods=["GET"])
def get_template(tid):
    return jsonify(svc.get_template(tenant_id(), tid))


@route_template_bp.route("/route-templates/<int:tid>", methods=["PUT"])
def update_template(tid):
    return jsonify(svc.update_template(tenant_id(), tid, json_body()))


@route_template_bp.route("/route-templates/<int:tid>", methods=["DELETE"])
def delete_template(tid):
    svc.delete_template(tenant_id(), tid)
    return jsonify({"deleted": True, "id": tid})


@route_template_bp.route("/route-templates/<int:tid>/stages", methods=["PUT"])
def replace_stages(tid):
    return jsonify(svc.replace_stages(tenant_id(), tid, json_body().get("stages")))


@route_template_bp.route("/route-templates/<int:tid>/stages", methods=["POST"])
def insert_stage(tid):
    data = json_body()
    return jsonify(svc.insert_stage(tenant_id(), tid, data.get("order_index"), data)), 201


@route_template_bp.route("/route-templates/<int:tid>/stages/<int:index>", methods=["DELETE"])
def delete_stage(tid, index):
    return jsonify(svc.delete_stage(tenant_id(), tid, index))
