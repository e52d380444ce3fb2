from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from ..core.config import settings
from ..database import get_db  # noqa: F401 - re-exported for routers
from ..schemas.actor import Actor, Role
from ..utils.clock import utcnow

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def create_access_token(actor_id: int, role: Role, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a bearer token for ``actor_id``; used by tests and local tooling."""
    expire = utcnow() + (expires_delta or timedelta(minutes=60))
    payload = {"sub": str(actor_id), "role": Role(role).value, "exp": expire}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def get_current_actor(token: Optional[str] = Depends(oauth2_scheme), request: Request = None) -> Actor:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    jwt_token = token or (request.cookies.get("access_token") if request else None)
    if not jwt_token:
        raise credentials_exception
    try:
        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        sub = payload.get("sub")
        role = payload.get("role")
        if sub is None or role is None:
            raise credentials_exception
        return Actor(id=int(sub), role=Role(role))
    except (JWTError, ValueError):
        raise credentials_exception


def get_current_customer(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role not in (Role.CUSTOMER, Role.ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not a customer.",
        )
    return actor


def get_current_contractor(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != Role.CONTRACTOR:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not a contractor.",
        )
    return actor
