import logging

import jwt
from sqlalchemy.orm import Session

from locateme.dependencies.settings import get_settings
from locateme.models.user import User

logger = logging.getLogger(__name__)


def decode_jwt(token: str) -> dict | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except jwt.ExpiredSignatureError:
        logger.debug("JWT decode failed: token expired")
        return None
    except jwt.InvalidTokenError as exc:
        logger.debug("JWT decode failed: invalid token (%s)", exc)
        return None


def get_active_user(db: Session, user_id) -> User | None:
    try:
        user_pk = int(user_id)
    except (TypeError, ValueError):
        return None
    user = db.get(User, user_pk)
    if user is None or not user.active:
        return None
    return user
