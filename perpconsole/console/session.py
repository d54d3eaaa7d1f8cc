"""
Session: the console's mutable control state.

Held explicitly and passed to the dispatcher, which is its only writer.
Readers (reconciliation, diagnostics) never mutate it.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from perpconsole.console.commands import ActorSelector
from perpconsole.exceptions import ValidationError
from perpconsole.gateway.retry import RetryPolicy


@dataclass(frozen=True)
class Actor:
    """A resolved account identity."""
    index: int
    address: str

    @property
    def label(self) -> str:
        return ActorSelector(self.index).label

    def __str__(self) -> str:
        return f"{self.label}({_short(self.address)})"


def _short(address: str) -> str:
    if len(address) <= 12:
        return address
    return f"{address[:6]}…{address[-4:]}"


@dataclass
class Session:
    """
    Console control state for the lifetime of the process.

    Attributes:
        addresses: Account addresses by actor index (0 = deployer, n = U<n>);
            None marks an unconfigured slot
        current_actor: Index used when a command omits its selector
        market_id: Active market context for market-scoped opcodes
        concurrency_limit: Outbound call budget the gateway is built with
        retry_policy: Backoff schedule the gateway is built with
        success_pause_ms: REPL pause after a successful trade
        error_pause_ms: REPL pause after a failed trade
        strict: Pre-flight warnings become ValidationErrors
        script_depth: Nesting level of RUN scripts currently executing
    """
    addresses: List[Optional[str]] = field(default_factory=list)
    current_actor: Optional[int] = None
    market_id: Optional[str] = None
    concurrency_limit: int = 3
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    success_pause_ms: int = 3000
    error_pause_ms: int = 5000
    strict: bool = False
    script_depth: int = 0

    @classmethod
    def from_addresses(cls, deployer: Optional[str], users: List[str], **kwargs) -> "Session":
        return cls(addresses=[deployer] + list(users), **kwargs)

    def has_actor(self, index: int) -> bool:
        return 0 <= index < len(self.addresses) and bool(self.addresses[index])

    def actor_at(self, index: int) -> Actor:
        if not self.has_actor(index):
            raise ValidationError(f"actor {ActorSelector(index).label} is not configured")
        return Actor(index=index, address=self.addresses[index])

    def resolve_actor(self, selector: Optional[ActorSelector]) -> Actor:
        """
        Resolve a command's selector, falling back to the current actor.

        Raises:
            ValidationError: If no selector was given and no current actor is
                set, or the selected slot has no address
        """
        if selector is not None:
            return self.actor_at(selector.index)
        if self.current_actor is None:
            raise ValidationError("no actor selected: prefix the command with @/U<n> or run SU first")
        return self.actor_at(self.current_actor)

    def switch_actor(self, selector: ActorSelector) -> Actor:
        actor = self.actor_at(selector.index)
        self.current_actor = actor.index
        return actor

    def require_market(self) -> str:
        if not self.market_id:
            raise ValidationError("no active market: run MKT <marketId> first")
        return self.market_id

    @property
    def current(self) -> Optional[Actor]:
        if self.current_actor is None or not self.has_actor(self.current_actor):
            return None
        return self.actor_at(self.current_actor)
