from __future__ import annotations

# The Queue Manager service: the authoritative owner of all department queues.
#
# This module is only the MQTT adapter. Business logic lives in
# `TokenService` (importable and testable without paho-mqtt); here we map
# request messages to its operations and errors to the shared envelope.
#
# Besides answering requests, a background thread periodically
# - broadcasts one queue snapshot per department on `<ns>/status/updates`
# - sweeps called tokens whose no-show grace period elapsed
# The core has no timers; this loop is its external scheduler.

import argparse
import json
import logging
import threading
import time
from typing import Any, Callable, TYPE_CHECKING

from .config import EngineConfig, configure_logging, load_settings
from .errors import ErrorResponse, QueueError
from .models import DEFAULT_PRIORITY, DEFAULT_SERVICE_TYPE, CounterStatus, Token
from .service import TokenService
from .service_time import scaled_clock
from .store import InMemoryDirectory

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)


def _token_reply(kind: str, token: Token | None) -> dict[str, Any]:
    return {"type": kind, "token": token.to_message() if token is not None else None}


class MqttQueueManagerService:
    """MQTT adapter around TokenService."""

    def __init__(
        self,
        *,
        mqtt: MqttClient,
        service: TokenService,
        department_ids: list[str],
        namespace: str = "tokenq/v0",
    ) -> None:
        # Local import so the adapter can be unit tested with a fake client.
        from . import mqtt_topics

        self._topics = mqtt_topics
        self.mqtt = mqtt
        self.service = service
        self.department_ids = list(department_ids)
        self.namespace = namespace

        self._stop_event = threading.Event()
        self._status_thread: threading.Thread | None = None

        self._routes: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            # kiosk / administration
            "issue_token": self._issue_token,
            "cancel_token": self._cancel_token,
            "transfer_token": self._transfer_token,
            "estimate_wait": self._estimate_wait,
            "queue_status": self._queue_status,
            "reorder_queue": self._reorder_queue,
            "get_token": self._get_token,
            # counters
            "set_counter_status": self._set_counter_status,
            "call_next": self._call_next,
            "start_service": self._start_service,
            "complete_service": self._complete_service,
            "mark_no_show": self._mark_no_show,
        }

    def start(self, *, publish_status_every: float = 2.0) -> None:
        self.mqtt.subscribe(self._topics.manager_requests(self.namespace))
        self.mqtt.subscribe(self._topics.counter_requests(self.namespace))
        self.mqtt.add_handler(self._handle_message)

        self._status_thread = threading.Thread(
            target=self._status_publisher_loop,
            args=(publish_status_every,),
            daemon=True,
        )
        self._status_thread.start()

    def stop(self) -> None:
        """Stop background threads. Call before disconnecting MQTT."""
        self._stop_event.set()
        t = self._status_thread
        if t and t.is_alive():
            t.join(timeout=1.0)

    def publish_status(self) -> None:
        for department_id in self.department_ids:
            snapshot = self.service.queue_status(department_id)
            self.mqtt.publish(self._topics.status_updates(self.namespace), {"type": "queue_status", **snapshot})

    def sweep_no_shows(self) -> list[Token]:
        expired: list[Token] = []
        for department_id in self.department_ids:
            expired.extend(self.service.expire_no_shows(department_id))
        return expired

    def _status_publisher_loop(self, interval: float) -> None:
        while not self._stop_event.is_set():
            try:
                self.sweep_no_shows()
                self.publish_status()
            except Exception:
                # Keep publishing even if one round fails.
                logger.exception("status round failed")
            self._stop_event.wait(interval)

    def _reply(self, reply_to: str, corr_id: str | None, message: dict[str, Any]) -> None:
        msg = dict(message)
        if corr_id is not None:
            msg["corr_id"] = corr_id
        self.mqtt.publish(reply_to, msg)

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        mtype = msg.get("type")
        corr_id = msg.get("corr_id") if isinstance(msg.get("corr_id"), str) else None
        reply_to = msg.get("reply_to") if isinstance(msg.get("reply_to"), str) else None

        handler = self._routes.get(str(mtype))
        if handler is None or not reply_to:
            # Broadcasts and our own replies travel on shared topics too.
            return

        try:
            response = handler(msg)
        except QueueError as exc:
            response = exc.to_response().to_message()
        except (KeyError, TypeError, ValueError) as exc:
            response = ErrorResponse("bad_request", str(exc)).to_message()
        self._reply(reply_to, corr_id, response)

    # -------------------- kiosk / administration --------------------

    def _issue_token(self, msg: dict[str, Any]) -> dict[str, Any]:
        token = self.service.issue_token(
            customer_id=_required(msg, "customer_id"),
            department_id=_required(msg, "department_id"),
            priority=msg.get("priority", DEFAULT_PRIORITY),
            service_type=str(msg.get("service_type") or DEFAULT_SERVICE_TYPE),
        )
        reply = _token_reply("token_issued", token)
        reply["estimated_wait_minutes"] = self.service.estimate_for_token(token.token_number)
        return reply

    def _cancel_token(self, msg: dict[str, Any]) -> dict[str, Any]:
        token = self.service.cancel_token(_required(msg, "token_number"), msg.get("reason"))
        return _token_reply("token_cancelled", token)

    def _transfer_token(self, msg: dict[str, Any]) -> dict[str, Any]:
        token = self.service.transfer_token(
            _required(msg, "token_number"),
            _required(msg, "department_id"),
            msg.get("counter_id"),
            str(msg.get("reason") or ""),
        )
        return _token_reply("token_transferred", token)

    def _estimate_wait(self, msg: dict[str, Any]) -> dict[str, Any]:
        department_id = _required(msg, "department_id")
        minutes = self.service.estimate_wait(
            department_id,
            msg.get("priority", DEFAULT_PRIORITY),
            str(msg.get("service_type") or DEFAULT_SERVICE_TYPE),
        )
        return {"type": "wait_estimate", "department_id": department_id, "minutes": minutes}

    def _queue_status(self, msg: dict[str, Any]) -> dict[str, Any]:
        return {"type": "queue_status", **self.service.queue_status(_required(msg, "department_id"))}

    def _reorder_queue(self, msg: dict[str, Any]) -> dict[str, Any]:
        department_id = _required(msg, "department_id")
        order = msg.get("order")
        if not isinstance(order, list):
            raise ValueError("order must be a list of token numbers")
        positions = self.service.reorder_queue(department_id, [str(n) for n in order])
        return {"type": "queue_reordered", "department_id": department_id, "positions": positions}

    def _get_token(self, msg: dict[str, Any]) -> dict[str, Any]:
        return _token_reply("token", self.service.get_token(_required(msg, "token_number")))

    # -------------------- counters --------------------

    def _set_counter_status(self, msg: dict[str, Any]) -> dict[str, Any]:
        counter = self.service.set_counter_status(_required(msg, "counter_id"), CounterStatus(_required(msg, "status")))
        return {"type": "counter_status", **counter.to_message()}

    def _call_next(self, msg: dict[str, Any]) -> dict[str, Any]:
        token = self.service.call_next(_required(msg, "counter_id"))
        if token is not None:
            self.mqtt.publish(
                self._topics.department_calls(token.department_id, self.namespace),
                {
                    "type": "token_called",
                    "display_number": token.display_number,
                    "counter_id": token.counter_id,
                },
            )
        return _token_reply("next_token", token)

    def _start_service(self, msg: dict[str, Any]) -> dict[str, Any]:
        token = self.service.start_service(_required(msg, "token_number"), msg.get("staff_id"))
        return _token_reply("service_started", token)

    def _complete_service(self, msg: dict[str, Any]) -> dict[str, Any]:
        token = self.service.complete_service(_required(msg, "token_number"), msg.get("notes"), msg.get("rating"))
        return _token_reply("service_completed", token)

    def _mark_no_show(self, msg: dict[str, Any]) -> dict[str, Any]:
        return _token_reply("token_no_show", self.service.mark_no_show(_required(msg, "token_number")))


def _required(msg: dict[str, Any], key: str) -> str:
    value = msg.get(key)
    if value is None or value == "":
        raise ValueError(f"{key} required")
    return str(value)


def load_directory(path: str | None, *, counters_per_department: int = 2) -> InMemoryDirectory:
    if path is None:
        return InMemoryDirectory.demo(counters_per_department=counters_per_department)
    with open(path, encoding="utf-8") as fh:
        return InMemoryDirectory.from_dict(json.load(fh))


def main() -> None:
    # Import MQTT dependencies only when running the real service.
    from .mqtt_client import MqttClient

    settings = load_settings()
    parser = argparse.ArgumentParser(description="Queue Manager (MQTT)")
    parser.add_argument("--mqtt-host", default=settings.mqtt_host)
    parser.add_argument("--mqtt-port", type=int, default=settings.mqtt_port)
    parser.add_argument("--namespace", default=settings.namespace)
    parser.add_argument("--directory", default=None, help="JSON file with departments and counters (default: demo)")
    parser.add_argument("--counters-per-department", type=int, default=2, help="demo directory only")
    parser.add_argument("--no-show-grace", type=float, default=5.0, help="minutes before a called token expires")
    parser.add_argument(
        "--time-scale",
        type=float,
        default=1.0,
        help="simulated seconds per wall-clock second (match the counters)",
    )
    parser.add_argument(
        "--publish-status-every",
        type=float,
        default=2.0,
        help="seconds between status broadcasts (and no-show sweeps)",
    )
    args = parser.parse_args()
    configure_logging(settings.log_level)

    directory = load_directory(args.directory, counters_per_department=args.counters_per_department)
    service = TokenService(
        directory=directory,
        config=EngineConfig(no_show_grace_minutes=args.no_show_grace),
        clock=scaled_clock(args.time_scale),
    )
    department_ids = [d.id for d in directory.departments()]

    mqtt_client = MqttClient(client_id="manager", host=args.mqtt_host, port=args.mqtt_port)
    mqtt_client.start()

    adapter = MqttQueueManagerService(
        mqtt=mqtt_client, service=service, department_ids=department_ids, namespace=args.namespace
    )
    adapter.start(publish_status_every=args.publish_status_every)

    print(
        f"[manager] connected to MQTT {args.mqtt_host}:{args.mqtt_port}, namespace={args.namespace}, "
        f"departments={','.join(department_ids)}"
    )

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        adapter.stop()
        mqtt_client.stop()


if __name__ == "__main__":
    main()
