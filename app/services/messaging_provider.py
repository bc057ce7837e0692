import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from app.core.config import settings
from app.core.id_utils import generate_message_id


SIMULATED_FAILURE_REASON = "Failed to deliver message"


@dataclass(frozen=True)
class MessageSendRequest:
    log_id: int
    customer_id: int
    content: str


@dataclass(frozen=True)
class MessageSendResult:
    provider: str
    message_id: str | None
    status: str
    failure_reason: str | None = None


class MessagingProvider(Protocol):
    name: str

    async def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        ...


class SimulatedMessagingProvider:
    """Vendor stand-in that acknowledges immediately with a configurable success rate."""

    name = "simulated"

    def __init__(self, success_rate: float = 0.9, seed: int | None = None):
        self.success_rate = success_rate
        self._rng = random.Random(seed)

    async def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        if self._rng.random() < self.success_rate:
            return MessageSendResult(
                provider=self.name,
                message_id=generate_message_id(),
                status="delivered",
            )
        return MessageSendResult(
            provider=self.name,
            message_id=None,
            status="failed",
            failure_reason=SIMULATED_FAILURE_REASON,
        )


def _simulated_provider() -> MessagingProvider:
    return SimulatedMessagingProvider(
        success_rate=settings.messaging_simulated_success_rate,
        seed=settings.messaging_simulated_seed,
    )


_MESSAGING_PROVIDERS: dict[str, Callable[[], MessagingProvider]] = {
    "simulated": _simulated_provider,
}


def get_messaging_provider(name: str | None = None) -> MessagingProvider:
    normalized = (name or settings.messaging_provider_default or "").strip().lower()
    factory = _MESSAGING_PROVIDERS.get(normalized)
    if not factory:
        available = ", ".join(sorted(_MESSAGING_PROVIDERS))
        raise ValueError(f"Unknown messaging provider '{name}'. Available: {available}")
    return factory()
