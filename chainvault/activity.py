"""
Activity Events - liveness pings as explicit events

Every vault-mutating action an owner takes (deposit, withdraw, pay, repay,
loan funding, payroll execution, explicit ping) is emitted on the bus. The
inactivity gate subscribes and resets the owner's lastActivityAt.

Listener failures are logged, never raised: by the time an event is emitted
the money has already moved.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from .cadence import utc_now

logger = logging.getLogger("chainvault.activity")


class ActivityKind(Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    PAY = "pay"
    LOAN_FUNDED = "loan_funded"
    REPAY = "repay"
    PAYROLL = "payroll"
    PING = "ping"


@dataclass(frozen=True)
class ActivityEvent:
    account: str
    kind: ActivityKind
    at: datetime = field(default_factory=utc_now)
    ref: str = ""


Listener = Callable[[ActivityEvent], Any]


class ActivityBus:

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def emit(self, event: ActivityEvent):
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Activity listener failed for {event.kind.value} by {event.account[:10]}...: {e}")
