"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from app.core.exceptions import ForbiddenError, NotFoundError, UnauthorizedError
from app.core.logging import bind_employer
from app.core.security import load_session_cookie
from app.models.employer import Employer
from app.models.user import User

SESSION_COOKIE_NAME = "werkgeversportaal_session"


async def get_current_user(request: Request) -> User:
    """Dependency: load session from cookie and return User."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await User.get(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    return user


async def get_current_employer(user: User = Depends(get_current_user)) -> Employer:
    """Dependency: the employer account the user acts for. Archived accounts are gone for the user."""
    if user.employer_id is None:
        raise ForbiddenError("No employer account linked")
    employer = await Employer.get(user.employer_id)
    if not employer or employer.archived_at is not None:
        raise NotFoundError("Employer not found")
    bind_employer(str(employer.id))
    return employer


async def require_admin(request: Request) -> User:
    """Dependency: require current user to have role admin."""
    user = await get_current_user(request)
    if getattr(user, "role", "user") != "admin":
        raise ForbiddenError("Admin only")
    return user
