from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from fleetbook.core.entities import Actor, RoleName
from fleetbook.core.state_machine import ReservationStateMachine
from fleetbook.utils.security import actor_from_token
from fleetbook.utils.exceptions import UnauthorizedException, ForbiddenException

# Bearer token extractor
bearer_scheme = HTTPBearer(auto_error=False)


# ─── Database & core ──────────────────────────────────────────────────────────
def get_db(request: Request):
    """
    Provide a read session from the app's session factory.
    Writes go through the state machine's own unit of work.
    """
    db: Session = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_state_machine(request: Request) -> ReservationStateMachine:
    return request.app.state.state_machine


# ─── Get Current Actor ────────────────────────────────────────────────────────
def get_current_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    """
    Turn the bearer token into an Actor. Raises 401 if the token is
    missing, invalid or expired.
    """
    if not credentials:
        raise UnauthorizedException("No authentication token provided")
    return actor_from_token(credentials.credentials)


# ─── Role Guards ──────────────────────────────────────────────────────────────
def require_roles(*roles: RoleName):
    """
    Factory that returns a FastAPI dependency requiring one of the given roles.

    Usage:
        @router.post("/vehicles")
        def create_vehicle(actor: Actor = Depends(require_roles(RoleName.ADMIN))):
            ...
    """
    def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise ForbiddenException(
                f"This action requires one of these roles: {[r.value for r in roles]}"
            )
        return actor
    return dependency


def get_admin_actor(actor: Actor = Depends(require_roles(RoleName.ADMIN))) -> Actor:
    return actor
