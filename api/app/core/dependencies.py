"""FastAPI dependencies for injection into route handlers."""

from collections.abc import Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import decode_token
from app.core.database import get_db
from app.models.complex import Complex, User, UserRole

bearer_scheme = HTTPBearer(auto_error=False)

ALL_ACTIONS = frozenset({"view", "create", "edit", "cancel", "delete"})

# area -> actions each role may perform there
ROLE_PERMISSIONS: dict[UserRole, dict[str, frozenset[str]]] = {
    UserRole.ADMIN: {
        "reservations": ALL_ACTIONS,
        "resources": ALL_ACTIONS,
        "clients": ALL_ACTIONS,
        "settings": frozenset({"view", "edit"}),
    },
    UserRole.MANAGER: {
        "reservations": ALL_ACTIONS,
        "resources": frozenset({"view", "create", "edit"}),
        "clients": ALL_ACTIONS,
        "settings": frozenset({"view"}),
    },
    UserRole.STAFF: {
        "reservations": frozenset({"view", "create", "edit", "cancel"}),
        "resources": frozenset({"view"}),
        "clients": frozenset({"view", "create", "edit"}),
    },
}


def has_permission(role: UserRole, area: str, action: str) -> bool:
    return action in ROLE_PERMISSIONS.get(role, {}).get(area, frozenset())


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the current user from the JWT bearer token."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        payload = decode_token(credentials.credentials)
        if payload.get("type") != "access":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")
        user_id = int(payload["sub"])
    except (JWTError, KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    result = await db.execute(
        select(User)
        .join(Complex, Complex.id == User.complex_id)
        .where(User.id == user_id, User.is_active.is_(True), Complex.is_active.is_(True))
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    return user


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


def require_permission(area: str, action: str) -> Callable:
    """Factory: return a dependency that lets the request through only if the user's role allows it.

    Usage in a route:
        @router.post("")
        async def create(user: User = Depends(require_permission("reservations", "create"))):
            ...
    """

    async def _check(user: User = Depends(get_current_user)) -> User:
        if not has_permission(user.role, area, action):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission {area}:{action}",
            )
        return user

    return _check
