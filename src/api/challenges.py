"""
Challenge and re-verification API blueprint.

This blueprint provides:
- /challenge: current challenge status (issues one when due)
- /challenge/config: public challenge settings
- /challenge/verify: answer or skip the active challenge
- /reverification/<identity>, /reverification/request,
  /reverification/complete: fresh proof-of-personhood flow
"""

import logging

from flask import Blueprint, jsonify

from api.state import services
from api.utils import (
    MAX_ID_LENGTH,
    bad_request,
    get_client_ip,
    get_json_body,
    render_result,
    require_api_key,
    status_for,
    validate_json_schema,
)
from integrity_errors import ErrorKind, VerificationFailedError
from reverification import ReVerificationReason

logger = logging.getLogger(__name__)

challenges_bp = Blueprint('challenges', __name__)


@challenges_bp.route('/challenge', methods=['POST'])
@require_api_key
def challenge_status():
    data = get_json_body()
    valid, error = validate_json_schema(
        data, required_fields={"identity": str}, max_lengths={"identity": MAX_ID_LENGTH}
    )
    if not valid:
        return bad_request(error)

    engine = services.require_engine()
    limited = engine.rate_limiter.check_combined(data["identity"], get_client_ip(), "challenge")
    if not limited.allowed:
        return render_result({}, None, limited)

    status = engine.get_challenge_status(data["identity"])
    return jsonify({"success": True, **status.to_dict()})


@challenges_bp.route('/challenge/config', methods=['GET'])
def challenge_config():
    engine = services.require_engine()
    return jsonify(engine.challenges.config.to_public_dict())


@challenges_bp.route('/challenge/verify', methods=['POST'])
@require_api_key
def verify_challenge():
    data = get_json_body()
    valid, error = validate_json_schema(
        data,
        required_fields={"identity": str},
        optional_fields={"challenge_id": str, "skip": bool, "answer": (str, int, list)},
        max_lengths={"identity": MAX_ID_LENGTH, "challenge_id": MAX_ID_LENGTH},
    )
    if not valid:
        return bad_request(error)
    skip = data.get("skip", False)
    if not skip and (data.get("challenge_id") is None or data.get("answer") is None):
        return bad_request("challenge_id and answer are required unless skip is true")

    engine = services.require_engine()
    limited = engine.rate_limiter.check_combined(data["identity"], get_client_ip(), "challenge")
    if not limited.allowed:
        return render_result({}, None, limited)

    result = engine.verify_challenge(
        data["identity"], data.get("challenge_id"), data.get("answer"), skip=skip
    )
    return render_result(result.to_dict(), result.error_kind)


# ============================================================
# Re-verification
# ============================================================

@challenges_bp.route('/reverification/<identity>', methods=['GET'])
@require_api_key
def pending_reverification(identity: str):
    pending = services.require_engine().get_pending_reverification(identity)
    if pending is None:
        return jsonify({"pending": False})
    return jsonify({
        "pending": True,
        "action": pending.action,
        "reason": pending.reason.value,
        "expires_at": pending.expires_at,
        **services.engine.reverification.get_message(pending.reason),
    })


@challenges_bp.route('/reverification/request', methods=['POST'])
@require_api_key
def request_reverification():
    data = get_json_body()
    valid, error = validate_json_schema(
        data,
        required_fields={"identity": str},
        optional_fields={"reason": str},
        max_lengths={"identity": MAX_ID_LENGTH},
    )
    if not valid:
        return bad_request(error)
    try:
        reason = ReVerificationReason(data.get("reason", ReVerificationReason.ADMIN_REQUEST.value))
    except ValueError:
        return bad_request(
            f"reason must be one of: {', '.join(r.value for r in ReVerificationReason)}"
        )

    req = services.require_engine().request_reverification(data["identity"], reason)
    return jsonify({"success": True, **req.to_dict()}), 201


@challenges_bp.route('/reverification/complete', methods=['POST'])
@require_api_key
def complete_reverification():
    """
    Verify a fresh proof with the identity oracle and retire the old identity.

    Request body:
        identity: the flagged pseudonym
        proof: oracle-specific proof payload for the pending action
    """
    data = get_json_body()
    valid, error = validate_json_schema(
        data,
        required_fields={"identity": str, "proof": dict},
        max_lengths={"identity": MAX_ID_LENGTH},
    )
    if not valid:
        return bad_request(error)

    engine = services.require_engine()
    identity = data["identity"]
    pending = engine.get_pending_reverification(identity)
    if pending is None:
        kind = ErrorKind.NO_PENDING_REVERIFICATION
        return jsonify({"success": False, "error": kind.value}), status_for(kind)

    try:
        pseudonym = services.identity_oracle.verify(pending.action, data["proof"])
    except VerificationFailedError as e:
        logger.warning(f"Re-verification proof rejected for {identity}: {e}")
        kind = ErrorKind.VERIFICATION_FAILED
        return jsonify({"success": False, "error": kind.value, "message": e.message}), status_for(kind)

    kind = engine.complete_reverification(identity, pseudonym)
    if kind is not None:
        return jsonify({"success": False, "error": kind.value}), status_for(kind)
    return jsonify({"success": True, "identity": pseudonym})
