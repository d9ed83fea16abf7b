"""
Category Registry blueprint.

Routes:
  GET    /approval-categories                    – list categories
  POST   /approval-categories                    – create category
  GET    /approval-categories/<cid>              – get category
  PUT    /approval-categories/<cid>              – update category (code is immutable)
  DELETE /approval-categories/<cid>              – delete or deactivate
  POST   /approval-categories/<cid>/validate     – dry-run payload validation
"""

from flask import Blueprint, jsonify, request

import eapproval.services.category_service as svc
from eapproval.blueprints import json_body, register_error_handlers, tenant_id

category_bp = Blueprint("category", __name__, url_prefix="/api/v1")
register_error_handlers(category_bp)


@category_bp.route("/approval-categories", methods=["GET"])
def list_categories():
    include_inactive = request.args.get("include_inactive") == "true"
    return jsonify(svc.list_categories(tenant_id(), include_inactive=include_inactive))


@category_bp.route("/approval-categories", methods=["POST"])
def create_category():
    """Create a category.

    Body: { tenant_id, code, name, description?, field_schema?, owner_user_id?,
            default_template_id? }
    """
    return jsonify(svc.create_category(tenant_id(), json_body())), 201


@category_bp.route("/approval-categories/<int:cid>", methods=["GET"])
def get_category(cid):
    return jsonify(svc.get_category(tenant_id(), cid))


@category_bp.route("/approval-categories/<int:cid>", methods=["PUT"])
def update_category(cid):
    return jsonify(svc.update_category(tenant_id(), cid, json_body()))


@category_bp.route("/approval-categories/<int:cid>", methods=["DELETE"])
def delete_category(cid):
    return jsonify(svc.delete_category(tenant_id(), cid))


@category_bp.route("/approval-categories/<int:cid>/validate", methods=["POST"])
def validate_payload(cid):
    """Validate a payload without submitting it.

    Body: { tenant_id, payload }
    """
    category = svc.get_category_row(tenant_id(), cid)
    clean, errors = svc.validate_payload(category, json_body().get("payload"))
    return jsonify({"valid": not errors, "payload": clean, "errors": errors})
