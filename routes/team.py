"""Team management routes that change seat usage."""

from flask import Blueprint, abort, jsonify

from services.auth import login_required, require_organization
from services.users import UserNotFoundError, deactivate_user, reactivate_user

team_bp = Blueprint("team", __name__, url_prefix="/team")


@team_bp.route("/users/<int:user_id>/deactivate", methods=["POST"])
@login_required
def deactivate(user_id):
    try:
        change = deactivate_user(user_id, organization_id=require_organization())
    except UserNotFoundError:
        abort(404, description="User not found")
    return jsonify(change.to_dict())


@team_bp.route("/users/<int:user_id>/reactivate", methods=["POST"])
@login_required
def reactivate(user_id):
    try:
        change = reactivate_user(user_id, organization_id=require_organization())
    except UserNotFoundError:
        abort(404, description="User not found")
    return jsonify(change.to_dict())
