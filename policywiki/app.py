import logging
import os

from flask import Flask, g, jsonify, render_template, request
from flask_wtf.csrf import CSRFProtect
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from policywiki import auth
from policywiki.admin import admin_bp
from policywiki.auth import auth_bp, login_required, permission_required, wants_json
from policywiki.bootstrap import database_status, init_db
from policywiki.models import AuditLog, Document, SessionLocal, get_session
from policywiki.permissions import Permission, current_permissions
from policywiki.public import public_bp
from policywiki.search import SearchOptions, document_summary, search_documents
from policywiki.workflow import WorkflowError, effective_status, get_transition, transition

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Schema creation and seeding are idempotent, so every worker may run them.
init_db()

app = Flask(__name__, template_folder="templates")
app.secret_key = os.environ.get("SECRET_KEY", "dev")
app.config.update(
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
    MAX_CONTENT_LENGTH=int(os.environ.get("MAX_UPLOAD_MB", "50")) * 1024 * 1024,
)
app.config["SESSION_COOKIE_SECURE"] = (
    os.environ.get("SESSION_COOKIE_SECURE", "true").lower() == "true"
)
app.config["WTF_CSRF_ENABLED"] = (
    os.environ.get("WTF_CSRF_ENABLED", "true").lower() == "true"
)


@app.after_request
def set_security_headers(response):
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


@app.teardown_appcontext
def remove_session(exc=None):
    SessionLocal.remove()


csrf = CSRFProtect(app)
auth.init_app(app)
app.register_blueprint(auth_bp)
app.register_blueprint(public_bp)
app.register_blueprint(admin_bp)

# JSON endpoints authenticate with the SameSite session cookie.
csrf.exempt(auth.api_login)
csrf.exempt(auth.api_logout)


def _error_response(status, message):
    if wants_json():
        return jsonify(error=message), status
    return render_template("error.html", status=status, message=message), status


@app.errorhandler(400)
def handle_bad_request(error):
    return _error_response(400, getattr(error, "description", None) or "Bad request")


@app.errorhandler(401)
def handle_unauthorized(error):
    return _error_response(401, "Authentication required")


@app.errorhandler(403)
def handle_forbidden(error):
    user = g.get("user")
    app.logger.warning(
        "403 Forbidden: path=%s user=%s reason=%s",
        request.path,
        user.id if user is not None else None,
        getattr(error, "description", ""),
    )
    return _error_response(403, "Forbidden")


@app.errorhandler(404)
def handle_not_found(error):
    return _error_response(404, "Not found")


@app.errorhandler(409)
def handle_conflict(error):
    return _error_response(409, getattr(error, "description", None) or "Conflict")


@app.errorhandler(WorkflowError)
def handle_workflow_error(error):
    app.logger.info("Workflow rejected on %s: %s", request.path, error)
    return _error_response(error.status_code, str(error))


@app.errorhandler(500)
def handle_internal_error(error):
    original = getattr(error, "original_exception", None) or error
    if not isinstance(original, HTTPException):
        app.logger.error(
            "Unhandled error on %s", request.path, exc_info=original
        )
    return _error_response(500, "Internal server error")


@app.context_processor
def inject_user():
    permissions = current_permissions()

    def can(permission):
        return permissions.allows(permission)

    return {
        "current_user": g.get("user"),
        "can": can,
        "effective_status": effective_status,
    }


@app.get("/health")
def health():
    return jsonify(status="ok")


@app.get("/api/search")
def api_search():
    """Search documents; only published documents unless ``status`` is given."""
    try:
        options = SearchOptions.from_args(request.args, status="published")
    except ValueError as exc:
        return jsonify(error=str(exc)), 400
    if options.status != "published" and not g.permissions.allows(Permission.READ_DRAFT):
        return jsonify(error="Insufficient permissions"), 403
    db = get_session()
    try:
        result = search_documents(db, options)
        return jsonify(
            {
                "results": [document_summary(doc) for doc in result.documents],
                "total": result.total,
                "limit": options.limit,
                "offset": options.offset,
            }
        )
    finally:
        db.close()


@app.get("/api/admin/db/status")
def api_db_status():
    try:
        return jsonify(database_status())
    except SQLAlchemyError:
        app.logger.exception("Database status check failed")
        return jsonify(initialized=False, error="Database unavailable"), 500


@csrf.exempt
@app.route("/api/admin/db/init", methods=["GET", "POST"])
@login_required
def api_db_init():
    result = init_db()
    app.logger.info("Database init requested by user %s", g.user.id)
    return jsonify(result)


@csrf.exempt
@app.post("/api/documents/<int:doc_id>/transition")
@login_required
def api_document_transition(doc_id: int):
    payload = request.get_json(silent=True) or {}
    action = payload.get("action")
    if not action:
        return jsonify(error="action is required"), 400
    rule = get_transition(action)
    if not g.permissions.allows(rule.permission):
        app.logger.warning(
            "Transition %s on document %s denied for user %s", action, doc_id, g.user.id
        )
        return jsonify(error="Insufficient permissions"), 403

    db = get_session()
    try:
        doc = db.get(Document, doc_id)
        if doc is None:
            return jsonify(error="Document not found"), 404
        transition(db, doc, action, g.user.id)
        db.commit()
        return jsonify(id=doc.id, status=doc.status)
    except WorkflowError:
        db.rollback()
        raise
    finally:
        db.close()


@app.get("/api/admin/audit")
@permission_required(Permission.VIEW_ANALYTICS, Permission.MANAGE_USERS)
def api_audit_log():
    """Recent audit entries, optionally for one object."""
    db = get_session()
    try:
        query = db.query(AuditLog)
        object_type = request.args.get("object_type")
        object_id = request.args.get("object_id", type=int)
        if object_type:
            query = query.filter(AuditLog.object_type == object_type)
        if object_id is not None:
            query = query.filter(AuditLog.object_id == object_id)
        limit = max(1, min(request.args.get("limit", 50, type=int), 200))
        rows = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
        return jsonify(
            [
                {
                    "id": row.id,
                    "actor_id": row.actor_id,
                    "action": row.action,
                    "object_type": row.object_type,
                    "object_id": row.object_id,
                    "changes": row.changes,
                    "ip_address": row.ip_address,
                    "created_at": row.created_at.isoformat(),
                }
                for row in rows
            ]
        )
    finally:
        db.close()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
