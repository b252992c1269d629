from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.principal_type == PrincipalType.HUMAN and self.role == "admin"

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    def require_topic_manager(self, owner_id: str | None) -> None:
        """Topic-scoped operations are open to admins and to the topic's owner."""
        if self.is_admin:
            return
        if owner_id and self.actor_id and owner_id == self.actor_id:
            return
        raise PermissionError("only the topic owner or an administrator may manage this topic")
