"""Builtin roles and screen access checks."""

from __future__ import annotations

from typing import Iterable


class BuiltinRole:
    ADMIN = "ADMIN"
    POWER = "POWER"
    BASIC = "BASIC"
    PUBLIC = "PUBLIC"


# role -> role it inherits from
_INHERITS: dict[str, str | None] = {
    BuiltinRole.ADMIN: BuiltinRole.POWER,
    BuiltinRole.POWER: BuiltinRole.BASIC,
    BuiltinRole.BASIC: BuiltinRole.PUBLIC,
    BuiltinRole.PUBLIC: None,
}


def role_hierarchy(role_id: str | None) -> list[str]:
    if role_id not in _INHERITS:
        return [BuiltinRole.PUBLIC]
    chain: list[str] = []
    current: str | None = role_id
    while current is not None:
        chain.append(current)
        current = _INHERITS.get(current)
    return chain


def can_access(user_role_id: str | None, required_role_id: str | None) -> bool:
    if not required_role_id:
        return True
    return required_role_id in role_hierarchy(user_role_id)


def filter_screens(screens: Iterable[dict], user_role_id: str | None) -> list[dict]:
    allowed = []
    for screen in screens:
        routing = screen.get("routing") if isinstance(screen, dict) else None
        role_id = routing.get("roleId") if isinstance(routing, dict) else None
        if can_access(user_role_id, role_id):
            allowed.append(screen)
    return allowed
