"""
Pairing and bearer-token authentication for the SynapScript API.

A client pairs by requesting a short-lived code, then exchanging it for a
persistent API token. Scheduled runs never pass through here.
"""

import secrets
import string
import threading
import time
import functools
from typing import Dict, Optional

from flask import current_app, jsonify, request, g

from synapscript.runner import db


PAIRING_CODE_LENGTH = 6
PAIRING_CODE_TTL_SECONDS = 5 * 60
PAIRING_ALPHABET = string.ascii_uppercase + string.digits

# In-memory pairing codes: code -> expiry (epoch seconds)
_pairing_codes: Dict[str, float] = {}
_pairing_lock = threading.Lock()


def initiate_pairing() -> Dict[str, float]:
    """Issue a new pairing code valid for five minutes."""
    code = ''.join(secrets.choice(PAIRING_ALPHABET) for _ in range(PAIRING_CODE_LENGTH))
    expiry = time.time() + PAIRING_CODE_TTL_SECONDS
    with _pairing_lock:
        _purge_expired()
        _pairing_codes[code] = expiry
    return {'code': code, 'expiry': expiry}


def complete_pairing(code: str, description: str = None, db_path=None) -> Optional[str]:
    """
    Exchange a pairing code for an API token.

    Returns:
        The new token, or None if the code is unknown or expired
    """
    code = (code or '').strip().upper()
    with _pairing_lock:
        _purge_expired()
        if code not in _pairing_codes:
            return None
        del _pairing_codes[code]

    token = secrets.token_urlsafe(32)
    db.create_api_token(token, description or 'paired device', db_path)
    return token


def _purge_expired() -> None:
    now = time.time()
    for code in [c for c, expiry in _pairing_codes.items() if expiry < now]:
        del _pairing_codes[code]


def get_bearer_token() -> Optional[str]:
    """Get the bearer token from the current request, if any."""
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header[len('Bearer '):].strip() or None
    return None


def is_valid_token(token: Optional[str], db_path=None) -> bool:
    if not token:
        return False
    return db.get_api_token(token, db_path) is not None


def requires_token(f):
    """
    Decorator to require a valid API token for a route.
    Returns 401 JSON if the token is missing or unknown.
    """
    @functools.wraps(f)
    def decorated_function(*args, **kwargs):
        if current_app.config.get('REQUIRE_AUTH', True):
            token = get_bearer_token()
            if not is_valid_token(token, current_app.config.get('DB_PATH')):
                return jsonify({'error': 'Not authenticated'}), 401
            g.api_token = token
        return f(*args, **kwargs)
    return decorated_function
