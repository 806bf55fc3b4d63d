"""Role to capability mapping and the explicit acting identity."""

from dataclasses import dataclass, field
from typing import Iterable

from allocation_hub.schemas.auth import CurrentUser
from allocation_hub.schemas.enums import Capability

ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    "admin": frozenset(
        {Capability.REQUEST, Capability.REVIEW, Capability.ALLOCATE, Capability.ADMINISTER}
    ),
    "eft_reviewer": frozenset({Capability.REQUEST, Capability.REVIEW}),
    "eft_allocator": frozenset({Capability.REQUEST, Capability.ALLOCATE}),
}

# Every authenticated identity may raise requests
DEFAULT_CAPABILITIES = frozenset({Capability.REQUEST})


def capabilities_for(roles: Iterable[str]) -> frozenset[Capability]:
    granted = set(DEFAULT_CAPABILITIES)
    for role in roles:
        granted |= ROLE_CAPABILITIES.get(role, frozenset())
    return frozenset(granted)


@dataclass(frozen=True)
class Actor:
    """Identity performing a workflow call.

    Passed explicitly into every engine operation instead of being read from
    request or session state.
    """

    id: str
    capabilities: frozenset[Capability] = field(default_factory=lambda: DEFAULT_CAPABILITIES)
    name: str = ""

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @classmethod
    def from_user(cls, user: CurrentUser) -> "Actor":
        return cls(
            id=user.id,
            capabilities=capabilities_for(user.all_roles),
            name=user.email or user.id,
        )
