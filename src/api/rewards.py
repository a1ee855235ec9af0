"""
Reward pipeline API blueprint.

This blueprint provides:
- /sessions/start, /sessions/complete: ad view sessions
- /quiz/start, /quiz/answer: daily quizzes
- /behavior/events, /behavior/honeypot: client behavior signals
- /daily-limit/check, /daily-stats/<identity>: daily quota
- /evaluate/<identity>: current integrity state, read-only

Rewards are credited to the external ledger only after the engine has
granted them.
"""

import logging

from flask import Blueprint, jsonify

from api.state import services
from api.utils import (
    MAX_ID_LENGTH,
    MAX_USER_AGENT_LENGTH,
    bad_request,
    get_client_ip,
    get_json_body,
    render_result,
    require_api_key,
    validate_json_schema,
)
from daily_quota import ActionType
from integrity_engine import PipelineResult
from integrity_errors import LedgerError

logger = logging.getLogger(__name__)

rewards_bp = Blueprint('rewards', __name__)

CLIENT_SIGNAL_FIELDS = {
    "client_timestamp_ms": int,
    "user_agent": str,
    "fingerprint_hash": str,
}


def _render(result: PipelineResult):
    return render_result(result.to_dict(), result.error_kind, result.rate_limit)


def _credit(
    result: PipelineResult,
    identity: str,
    action_type: ActionType,
    source_type: str,
    source_id: str,
):
    """
    Credit granted XP to the ledger and attach the receipt.

    If the ledger fails, the daily quota commit is reverted and the reward
    is forfeited; the view token or quiz session stays spent.
    """
    if not result.success or result.xp_awarded <= 0:
        return _render(result)
    try:
        receipt = services.ledger.credit_xp(identity, result.xp_awarded, source_type, source_id)
    except LedgerError as e:
        logger.error(f"Ledger credit failed, forfeiting {result.xp_awarded} XP for {identity}: {e}")
        services.require_engine().revert_earned(identity, result.xp_awarded, action_type)
        return jsonify({
            "success": False,
            "error": "LEDGER_UNAVAILABLE",
            "xp_awarded": 0,
            "message": "Reward could not be credited and was forfeited",
        }), 502
    body = result.to_dict()
    body["ledger"] = receipt.to_dict()
    return jsonify(body), 200


def _read_limited():
    result = services.require_engine().rate_limiter.check_combined(
        None, get_client_ip(), "read_api"
    )
    if result.allowed:
        return None
    return render_result({}, None, result)


# ============================================================
# Ad view sessions
# ============================================================

@rewards_bp.route('/sessions/start', methods=['POST'])
@require_api_key
def start_session():
    data = get_json_body()
    valid, error = validate_json_schema(
        data,
        required_fields={
            "identity": str,
            "content_id": str,
            "expected_duration_seconds": (int, float),
        },
        max_lengths={"identity": MAX_ID_LENGTH, "content_id": MAX_ID_LENGTH},
    )
    if not valid:
        return bad_request(error)

    result = services.require_engine().start_session(
        data["identity"],
        data["content_id"],
        data["expected_duration_seconds"],
        ip=get_client_ip(),
    )
    return _render(result)


@rewards_bp.route('/sessions/complete', methods=['POST'])
@require_api_key
def complete_session():
    data = get_json_body()
    valid, error = validate_json_schema(
        data,
        required_fields={
            "identity": str,
            "content_id": str,
            "view_token": str,
            "claimed_xp": int,
        },
        optional_fields={"duration_ms": int, **CLIENT_SIGNAL_FIELDS},
        max_lengths={
            "identity": MAX_ID_LENGTH,
            "content_id": MAX_ID_LENGTH,
            "view_token": MAX_ID_LENGTH,
            "user_agent": MAX_USER_AGENT_LENGTH,
            "fingerprint_hash": MAX_ID_LENGTH,
        },
    )
    if not valid:
        return bad_request(error)
    if data["claimed_xp"] < 0:
        return bad_request("claimed_xp must not be negative")

    result = services.require_engine().complete_session(
        data["identity"],
        data["content_id"],
        data["view_token"],
        data["claimed_xp"],
        ip=get_client_ip(),
        duration_ms=data.get("duration_ms"),
        client_timestamp_ms=data.get("client_timestamp_ms"),
        user_agent=data.get("user_agent"),
        fingerprint_hash=data.get("fingerprint_hash"),
    )
    return _credit(result, data["identity"], ActionType.AD, "ad_view", data["content_id"])


# ============================================================
# Quiz
# ============================================================

@rewards_bp.route('/quiz/start', methods=['POST'])
@require_api_key
def start_quiz():
    data = get_json_body()
    valid, error = validate_json_schema(
        data,
        required_fields={"identity": str, "quiz_id": str, "correct_index": int, "xp_reward": int},
        max_lengths={"identity": MAX_ID_LENGTH, "quiz_id": MAX_ID_LENGTH},
    )
    if not valid:
        return bad_request(error)
    if data["xp_reward"] < 0:
        return bad_request("xp_reward must not be negative")

    result = services.require_engine().start_quiz(
        data["identity"],
        data["quiz_id"],
        data["correct_index"],
        data["xp_reward"],
        ip=get_client_ip(),
    )
    return _render(result)


@rewards_bp.route('/quiz/answer', methods=['POST'])
@require_api_key
def answer_quiz():
    data = get_json_body()
    valid, error = validate_json_schema(
        data,
        required_fields={"identity": str, "quiz_id": str, "selected_index": int},
        max_lengths={"identity": MAX_ID_LENGTH, "quiz_id": MAX_ID_LENGTH},
    )
    if not valid:
        return bad_request(error)

    result = services.require_engine().answer_quiz(
        data["identity"], data["quiz_id"], data["selected_index"], ip=get_client_ip()
    )
    return _credit(result, data["identity"], ActionType.QUIZ, "quiz", data["quiz_id"])


# ============================================================
# Behavior signals
# ============================================================

@rewards_bp.route('/behavior/events', methods=['POST'])
@require_api_key
def record_behavior_event():
    data = get_json_body()
    valid, error = validate_json_schema(
        data,
        required_fields={"identity": str, "duration_ms": int, "content_id": str},
        optional_fields={"timestamp_ms": int, **CLIENT_SIGNAL_FIELDS},
        max_lengths={
            "identity": MAX_ID_LENGTH,
            "content_id": MAX_ID_LENGTH,
            "user_agent": MAX_USER_AGENT_LENGTH,
            "fingerprint_hash": MAX_ID_LENGTH,
        },
    )
    if not valid:
        return bad_request(error)
    if data["duration_ms"] < 0:
        return bad_request("duration_ms must not be negative")

    signals = {k: data[k] for k in CLIENT_SIGNAL_FIELDS if data.get(k) is not None}
    analysis = services.require_engine().record_behavior_event(
        data["identity"],
        data["duration_ms"],
        data["content_id"],
        timestamp_ms=data.get("timestamp_ms"),
        **signals,
    )
    return jsonify({"success": True, "analysis": analysis.to_dict()})


@rewards_bp.route('/behavior/honeypot', methods=['POST'])
@require_api_key
def record_honeypot():
    data = get_json_body()
    valid, error = validate_json_schema(
        data, required_fields={"identity": str}, max_lengths={"identity": MAX_ID_LENGTH}
    )
    if not valid:
        return bad_request(error)

    analysis = services.require_engine().record_honeypot(data["identity"])
    return jsonify({"success": True, "analysis": analysis.to_dict()})


# ============================================================
# Daily quota and state
# ============================================================

@rewards_bp.route('/daily-limit/check', methods=['POST'])
@require_api_key
def check_daily_limit():
    data = get_json_body()
    valid, error = validate_json_schema(
        data,
        required_fields={"identity": str, "proposed_xp": int, "action_type": str},
        max_lengths={"identity": MAX_ID_LENGTH},
    )
    if not valid:
        return bad_request(error)
    try:
        action_type = ActionType(data["action_type"])
    except ValueError:
        return bad_request(f"action_type must be one of: {', '.join(a.value for a in ActionType)}")

    result = services.require_engine().check_daily_limit(
        data["identity"], data["proposed_xp"], action_type
    )
    return jsonify({"success": result.allowed, **result.to_dict()})


@rewards_bp.route('/daily-stats/<identity>', methods=['GET'])
@require_api_key
def daily_stats(identity: str):
    limited = _read_limited()
    if limited:
        return limited
    return jsonify(services.require_engine().get_daily_stats(identity))


@rewards_bp.route('/evaluate/<identity>', methods=['GET'])
@require_api_key
def evaluate(identity: str):
    limited = _read_limited()
    if limited:
        return limited
    decision = services.require_engine().evaluate(identity, issue=False)
    return jsonify(decision.to_dict())
