"""
workflow_services.directory -- Default ActorDirectory backed by a dict.

Satisfies the ActorDirectory protocol from ``workflow_services.ports``.
Can be replaced with a database-backed or LDAP-backed implementation.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping


class StaticActorDirectory:
    def __init__(self, role_map: Mapping[str, Iterable[str]] | None = None) -> None:
        self._role_map: dict[str, tuple[str, ...]] = {
            actor: tuple(roles) for actor, roles in (role_map or {}).items()
        }

    def assign(self, actor_id: str, *roles: str) -> None:
        current = self._role_map.get(actor_id, ())
        self._role_map[actor_id] = current + tuple(r for r in roles if r not in current)

    def get_actor_roles(self, actor_id: str) -> tuple[str, ...]:
        return self._role_map.get(actor_id, ())

    def has_role(self, actor_id: str, role: str) -> bool:
        return role in self._role_map.get(actor_id, ())
