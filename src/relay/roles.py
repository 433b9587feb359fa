"""Peer roles.

The relay mediates between exactly two roles. Role A streams audio and
listening state; role B consumes audio and reports device telemetry.
"""

from dataclasses import dataclass
from enum import Enum

from src.relay.config import RolesConfig


class Role(Enum):
    """The two fixed peer identities."""

    A = "a"
    B = "b"

    @property
    def peer(self) -> "Role":
        """The opposite role."""
        return Role.B if self is Role.A else Role.A


@dataclass(frozen=True)
class RoleSet:
    """Maps configured role names to Role values and back."""

    name_a: str
    name_b: str

    @classmethod
    def from_config(cls, config: RolesConfig) -> "RoleSet":
        return cls(name_a=config.role_a, name_b=config.role_b)

    def name_of(self, role: Role) -> str:
        return self.name_a if role is Role.A else self.name_b

    def parse(self, name: object) -> Role | None:
        """Resolve a wire name to a Role; anything else is None."""
        if not isinstance(name, str):
            return None
        if name == self.name_a:
            return Role.A
        if name == self.name_b:
            return Role.B
        return None

    @property
    def names(self) -> tuple[str, str]:
        return (self.name_a, self.name_b)
