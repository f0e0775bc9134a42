from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from locateme.db import get_db
from locateme.services.access_scope import Principal
from locateme.utils.auth import decode_jwt, get_active_user

bearer = HTTPBearer(auto_error=False)

# Module-level dependency objects to avoid calling Depends() in function defaults
bearer_dep = Depends(bearer)
db_dep = Depends(get_db)


def get_current_principal(
    cred: HTTPAuthorizationCredentials = bearer_dep,
    db: Session = db_dep,
) -> Principal:
    if cred is None or cred.scheme.lower() != "bearer":
        raise HTTPException(401, "missing or invalid authorization header", headers={"WWW-Authenticate": "Bearer"})

    # Tolerate a pasted "Bearer <token>" inside the credentials value.
    token = cred.credentials
    if isinstance(token, str) and token.lower().startswith("bearer "):
        token = token.split(" ", 1)[1]

    payload = decode_jwt(token)
    if not payload:
        raise HTTPException(401, "invalid or expired token", headers={"WWW-Authenticate": "Bearer"})

    user = get_active_user(db, payload.get("sub"))
    if user is None:
        raise HTTPException(401, "user not found or inactive")
    return Principal.from_user(user)


current_principal_dependency = Depends(get_current_principal)


def require_staff(principal: Principal = current_principal_dependency) -> Principal:
    if not principal.is_staff:
        raise HTTPException(403, "Staff privileges required")
    return principal
