import hmac
import logging

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from checkin_errors import InheritanceLockedError, NotFoundError
from checkin_models import PrivacyPreferences, format_timestamp
from checkin_system import CheckinSystem

logger = logging.getLogger(__name__)


def create_app(system: CheckinSystem = None) -> Flask:
    app = Flask(__name__)
    CORS(app)

    if system is None:
        system = CheckinSystem.from_config_file()
    app.config["CHECKIN_SYSTEM"] = system
    if not system.config.internal_api_enabled:
        logger.warning("internal_api_key is not set, /internal routes are disabled")
    service = system.service

    @app.errorhandler(NotFoundError)
    def not_found(e):
        return jsonify({"error": "not found"}), 404

    @app.errorhandler(InheritanceLockedError)
    def locked(e):
        return jsonify({"error": "inheritance already triggered"}), 409

    @app.errorhandler(Exception)
    def internal_error(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception(f"Unhandled error on {request.path}: {e}")
        return jsonify({"error": "internal error"}), 500

    def json_body():
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def require_user_id(value):
        if not value or not isinstance(value, str):
            return None
        return value.strip() or None

    @app.route("/checkin", methods=["POST"])
    def record_checkin():
        data = json_body()
        user_id = require_user_id(data.get("user_id"))
        if not user_id:
            return jsonify({"error": "user_id is required"}), 400
        record = service.record_checkin(user_id)
        return jsonify({
            "status": record.status.value,
            "next_due_at": format_timestamp(record.next_due_at),
            "reminders_sent": record.reminders_sent,
        })

    @app.route("/checkin/status", methods=["GET"])
    def get_status():
        user_id = require_user_id(request.args.get("user_id"))
        if not user_id:
            return jsonify({"error": "user_id is required"}), 400
        record = service.get_status(user_id)
        return jsonify({
            "status": record.status.value,
            "next_due_at": format_timestamp(record.next_due_at),
            "reminders_sent": record.reminders_sent,
            "max_reminders": record.max_reminders,
            "grace_period_days": record.grace_period_days,
        })

    @app.route("/checkin/notifications", methods=["GET"])
    def list_notifications():
        user_id = require_user_id(request.args.get("user_id"))
        if not user_id:
            return jsonify({"error": "user_id is required"}), 400
        return jsonify([n.to_dict() for n in service.list_notifications(user_id)])

    @app.route("/checkin/preferences", methods=["PUT"])
    def update_preferences():
        data = json_body()
        user_id = require_user_id(data.get("user_id"))
        if not user_id:
            return jsonify({"error": "user_id is required"}), 400
        raw = data.get("preferences") or {}
        if not isinstance(raw, dict):
            return jsonify({"error": "preferences must be an object"}), 400
        try:
            preferences = PrivacyPreferences.from_dict(raw)
        except (ValueError, TypeError, AttributeError):
            return jsonify({"error": "invalid preferences"}), 400
        record = service.update_privacy_preferences(user_id, preferences)
        return jsonify(record.privacy.to_dict())

    @app.route("/internal/run-tick", methods=["POST"])
    def run_tick():
        if not system.config.internal_api_enabled:
            return jsonify({"error": "internal API disabled until internal_api_key is set"}), 403
        key = request.headers.get("X-Internal-Key", "")
        if not hmac.compare_digest(key.encode(), system.config.internal_api_key.encode()):
            return jsonify({"error": "invalid internal key"}), 403
        summary = system.driver.run_tick()
        return jsonify(summary.to_dict())

    return app


if __name__ == '__main__':
    create_app().run(debug=False)
