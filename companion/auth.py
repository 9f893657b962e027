"""
Bearer-token authentication (HS256 JWT, `sub` = user id).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from companion.config_loader import CONFIG

logger = logging.getLogger(__name__)


def _auth_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return (config or CONFIG).get("auth", {})


def create_access_token(user_id: str, config: Optional[Dict[str, Any]] = None,
                        expires_delta: Optional[timedelta] = None) -> str:
    cfg = _auth_config(config)
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=24))
    return jwt.encode({"sub": str(user_id), "exp": expire}, cfg.get("jwt_secret"),
                      algorithm=cfg.get("jwt_algorithm", "HS256"))


def user_id_from_token(token: Optional[str], config: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """User id (`sub`) from a raw JWT; None when absent or invalid."""
    if not token:
        return None
    cfg = _auth_config(config)
    try:
        payload = jwt.decode(token, cfg.get("jwt_secret"), algorithms=[cfg.get("jwt_algorithm", "HS256")])
    except JWTError as e:
        logger.warning(f"[AUTH] Token rejected: {e}")
        return None
    return payload.get("sub") or None


def user_id_from_authorization(authorization: Optional[str],
                               config: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """User id from an `Authorization: Bearer <jwt>` header; None when absent or invalid."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return user_id_from_token(authorization.split(" ", 1)[1].strip(), config)
