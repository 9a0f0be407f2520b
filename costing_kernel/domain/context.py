"""Explicit actor context passed through every mutating call."""

from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True, slots=True)
class ActorContext:
    """
    Who is performing an operation.

    Contract:
        Every mutating service method receives an ActorContext; nothing reads
        an ambient "current user".  ``actor_id`` is stamped on created rows as
        ``created_by``.
    """

    actor_id: UUID
    is_admin: bool = False
    display_name: str | None = None

    @property
    def stamp(self) -> str:
        return str(self.actor_id)
