"""Acting identity passed explicitly into every engine call."""

from dataclasses import dataclass

PEER = "peer"
SUPERVISOR = "supervisor"

ACTOR_ROLES = frozenset({PEER, SUPERVISOR})


@dataclass(frozen=True)
class ActorContext:
    """Who is acting, in which organization, with which role.

    Built by the actor_context middleware from the verified JWT; never
    inferred from ambient request state inside the services.
    """

    actor_id: int
    organization_id: int
    role: str

    @property
    def is_peer(self) -> bool:
        return self.role == PEER

    @property
    def is_supervisor(self) -> bool:
        return self.role == SUPERVISOR
