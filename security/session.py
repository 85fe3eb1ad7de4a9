import hashlib
from datetime import datetime
from flask import request, current_app

from models.session import Session

def hash_token(token: str) -> str:
    # SHA-256 is fine for hashing random session tokens
    return hashlib.sha256(token.encode("utf-8")).hexdigest()

def get_session_from_request():
    """Resolve the caller's session from the auth cookie.

    Sessions are written by the identity service; this core only reads them.
    """
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "consult_session")
    raw_token = request.cookies.get(cookie_name)
    if not raw_token:
        return None

    sess = (
        Session.query
        .filter_by(token_hash=hash_token(raw_token), revoked=False)
        .first()
    )
    if not sess or sess.expires_at <= datetime.utcnow():
        return None
    return sess
