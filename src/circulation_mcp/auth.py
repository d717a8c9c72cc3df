"""
Caller capabilities.

Authentication and role resolution happen outside the engine. What reaches
the coordinator is an already-validated actor id plus the permission codes it
was granted; operations check codes, never role names.
"""

from pydantic import BaseModel, ConfigDict, Field

from .config import ServerConfig, get_config
from .database.repository import AuthorizationError

VIEW_TRANSACTIONS = "transactions.view"
BORROW = "transactions.borrow"
RETURN = "transactions.return"
VIEW_RESERVATIONS = "reservations.view"
MANAGE_RESERVATIONS = "reservations.manage"
VIEW_FINES = "fines.view"
MANAGE_FINES = "fines.manage"
UPDATE_BOOKS = "books.update"


class ActorContext(BaseModel):
    """The pre-validated identity and capability set of a caller."""

    model_config = ConfigDict(frozen=True)

    actor_id: str = Field(..., min_length=1)
    permissions: frozenset[str] = Field(default_factory=frozenset)

    @classmethod
    def from_config(cls, config: ServerConfig) -> "ActorContext":
        """The capability set granted to this terminal."""
        return cls(actor_id=config.terminal_actor_id, permissions=frozenset(config.terminal_permissions))

    def can(self, permission: str) -> bool:
        return permission in self.permissions

    def require(self, permission: str) -> None:
        """
        Raises:
            AuthorizationError: If the permission was not granted
        """
        if permission not in self.permissions:
            raise AuthorizationError(
                f"Actor {self.actor_id} lacks permission {permission}", code=permission
            )


def terminal_actor() -> ActorContext:
    """The actor every call arriving through this MCP server runs as."""
    return ActorContext.from_config(get_config())
