# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import Store


STORE_HEADER = "X-Store-Id"


def require_store(f):
    """
    Establish the store context of a request.

    Sets g.store_id from the X-Store-Id header. Every service call made by
    the route receives it explicitly; nothing downstream reads g.

    Returns 400 if the header is missing or not an integer, 404 if no such
    store exists.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw = request.headers.get(STORE_HEADER, "").strip()
        if not raw:
            return jsonify({
                "error": "VALIDATION_ERROR",
                "message": f"{STORE_HEADER} header is required",
                "details": {"header": STORE_HEADER},
            }), 400
        try:
            store_id = int(raw)
        except ValueError:
            return jsonify({
                "error": "VALIDATION_ERROR",
                "message": f"{STORE_HEADER} must be an integer",
                "details": {"header": STORE_HEADER},
            }), 400

        if db.session.get(Store, store_id) is None:
            return jsonify({
                "error": "NOT_FOUND",
                "message": "Store not found",
                "details": {"store_id": store_id},
            }), 404

        g.store_id = store_id
        return f(*args, **kwargs)

    return decorated_function
