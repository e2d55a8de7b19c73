"""MQTT topic helpers.

Topic construction lives in one place so every component agrees on naming.

Topic layout under a configurable namespace (default: `tokenq/v0`):

Request/response:
- `<ns>/manager/requests`
    Kiosks and administrators: issue, cancel, transfer, estimates, status.
- `<ns>/manager/responses/<client_id>`
- `<ns>/counters/requests`
    Counter agents: open/close, call next, start, complete, no-show.
- `<ns>/counters/responses/<counter_id>`

Streaming/broadcast:
- `<ns>/status/updates`
    The manager broadcasts one queue snapshot per department periodically.
- `<ns>/departments/<department_id>/calls`
    "Token X to counter Y" announcements for display boards.
- `<ns>/counters/status/<counter_id>`
    Each counter agent publishes its own status.
"""

from __future__ import annotations

DEFAULT_NAMESPACE = "tokenq/v0"


def manager_requests(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/manager/requests"


def manager_responses(client_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/manager/responses/{client_id}"


def counter_requests(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/counters/requests"


def counter_responses(counter_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/counters/responses/{counter_id}"


def status_updates(namespace: str = DEFAULT_NAMESPACE) -> str:
    """Periodic per-department queue snapshots."""
    return f"{namespace}/status/updates"


def department_calls(department_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Announcements of called tokens, for the department's display board."""
    return f"{namespace}/departments/{department_id}/calls"


def counter_status(counter_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/counters/status/{counter_id}"
