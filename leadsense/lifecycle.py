"""Lead status graph.

The engine itself only drives ``Quote Sent``/``Follow-up Sent k`` to
``Follow-up Sent k+1`` (and ``New Lead`` to ``Quote Sent`` when a quote goes
out). Everything else arrives from operators, reply detection or invoicing.
"""

from typing import Dict, FrozenSet

NEW_LEAD = "New Lead"
QUOTE_SENT = "Quote Sent"
REPLY_RECEIVED = "Reply Received-Awaiting Action"
INVOICE_SENT = "Invoice Sent"
CONVERTED_PAID = "Converted-Paid"
INACTIVE = "Inactive"

MAX_FOLLOW_UPS = 4


def follow_up_status(number: int) -> str:
    if number < 1 or number > MAX_FOLLOW_UPS:
        raise ValueError(f"Follow-up number must be between 1 and {MAX_FOLLOW_UPS}, got {number}")
    return f"Follow-up Sent {number}"


FOLLOW_UP_STATUSES = tuple(follow_up_status(n) for n in range(1, MAX_FOLLOW_UPS + 1))

# statuses from which the engine may send the next follow-up
ENGINE_SOURCE_STATUSES = (QUOTE_SENT,) + FOLLOW_UP_STATUSES[:-1]

TERMINAL_STATUSES: FrozenSet[str] = frozenset({CONVERTED_PAID, INACTIVE})

ALL_STATUSES = (NEW_LEAD, QUOTE_SENT) + FOLLOW_UP_STATUSES + (
    REPLY_RECEIVED,
    INVOICE_SENT,
    CONVERTED_PAID,
    INACTIVE,
)

_EXITS = frozenset({REPLY_RECEIVED, INVOICE_SENT, INACTIVE})


def _build_graph() -> Dict[str, FrozenSet[str]]:
    graph: Dict[str, FrozenSet[str]] = {
        NEW_LEAD: frozenset({QUOTE_SENT, REPLY_RECEIVED, INACTIVE}),
        QUOTE_SENT: frozenset({FOLLOW_UP_STATUSES[0]}) | _EXITS,
        REPLY_RECEIVED: frozenset({INVOICE_SENT, INACTIVE, QUOTE_SENT}),
        INVOICE_SENT: frozenset({CONVERTED_PAID, INACTIVE}),
        CONVERTED_PAID: frozenset(),
        INACTIVE: frozenset(),
    }
    for index, status in enumerate(FOLLOW_UP_STATUSES):
        following = FOLLOW_UP_STATUSES[index + 1:index + 2]
        graph[status] = frozenset(following) | _EXITS
    return graph


TRANSITIONS: Dict[str, FrozenSet[str]] = _build_graph()


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
