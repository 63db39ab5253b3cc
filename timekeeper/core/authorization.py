from enum import Enum

from fastapi import Depends, HTTPException, Request

from timekeeper.deps.auth import require_auth


class Role(Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    EMPLOYEE = "EMPLOYEE"


ROLE_RANK = {
    Role.EMPLOYEE: 1,
    Role.MANAGER: 2,
    Role.ADMIN: 3,
    Role.OWNER: 4,
    Role.SUPER_ADMIN: 5,
}

# May act on other users' entries and skip the mandatory project rule.
PRIVILEGED_ROLES = frozenset({Role.SUPER_ADMIN, Role.OWNER, Role.ADMIN})

# May review (approve / reject) entries of other users.
REVIEWER_ROLES = PRIVILEGED_ROLES | {Role.MANAGER}


def parse_role(value) -> Role:
    if isinstance(value, Role):
        return value
    if not value:
        return Role.EMPLOYEE
    return Role(str(value).upper())


def is_privileged(role) -> bool:
    return parse_role(role) in PRIVILEGED_ROLES


def is_reviewer(role) -> bool:
    return parse_role(role) in REVIEWER_ROLES


def require_role(role: Role):
    def dependency(request: Request, _auth: tuple[int, int] = Depends(require_auth)):
        try:
            user_role = parse_role(getattr(request.state, "role", None))
        except ValueError as exc:
            raise HTTPException(status_code=403, detail="Invalid role claim") from exc

        if ROLE_RANK[user_role] < ROLE_RANK[role]:
            raise HTTPException(status_code=403, detail="Insufficient role")

        return user_role

    return dependency
