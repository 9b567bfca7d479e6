"""Order lifecycle exports."""

from .state_machine import (  # noqa: F401
    BulkItemOutcome,
    BulkOutcome,
    OrderLine,
    OrderStateMachine,
    PaymentConfirmation,
    PaymentReversal,
    SYSTEM_ACTOR,
    TransitionActor,
)
