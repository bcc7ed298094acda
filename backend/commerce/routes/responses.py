# Overview: Maps structured service results ({"success": bool, ...}) onto HTTP responses.

from flask import jsonify


# Result "code" -> HTTP status for failures
_STATUS_BY_CODE = {
    "validation": 400,
    "not_found": 404,
    "forbidden": 403,
    "invalid_signature": 401,
    "insufficient_stock": 409,
    "invalid_transition": 409,
    "gateway_error": 502,
}


def result_response(result: dict, success_status: int = 200):
    if result.get("success"):
        return jsonify(result), success_status
    return jsonify(result), _STATUS_BY_CODE.get(result.get("code"), 400)
