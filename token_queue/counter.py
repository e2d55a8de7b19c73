from __future__ import annotations

# Counter agent.
#
# A counter is a simple autonomous process standing in for a staff member:
# - it opens itself (`set_counter_status` -> active)
# - it repeatedly asks the manager to call the next token to it
# - it "serves" a called token by sleeping for a sampled service time
# - some customers never turn up; the counter then waits out the grace
#   period and reports a no-show
# - on exit it closes itself again
#
# The counter publishes its own status periodically so observers can monitor
# the floor without polling the manager.

import argparse
import logging
import random
import time
from typing import Any

from .config import configure_logging, load_settings
from .mqtt_client import MqttClient
from .mqtt_topics import counter_requests, counter_responses, counter_status
from .service_time import sample_service_minutes, to_wall_seconds

logger = logging.getLogger(__name__)


class CounterAgent:
    def __init__(
        self,
        *,
        mqtt: MqttClient,
        namespace: str,
        counter_id: str,
        mean_service_minutes: float = 10.0,
        no_show_share: float = 0.05,
        no_show_grace_minutes: float = 5.0,
        time_scale: float = 1.0,
        rng: random.Random | None = None,
    ) -> None:
        self.mqtt = mqtt
        self.namespace = namespace
        self.counter_id = counter_id
        self.mean_service_minutes = mean_service_minutes
        self.no_show_share = no_show_share
        self.no_show_grace_minutes = no_show_grace_minutes
        self.time_scale = time_scale
        self.rng = rng or random.Random()

        self.reply_topic = counter_responses(counter_id, namespace)
        self.served_count = 0
        self.no_show_count = 0
        self.current: str | None = None

    def request(self, message: dict[str, Any], *, timeout: float = 5.0) -> dict[str, Any]:
        return self.mqtt.request(
            request_topic=counter_requests(self.namespace),
            response_topic=self.reply_topic,
            message={**message, "counter_id": self.counter_id},
            timeout=timeout,
        )

    def set_status(self, status: str) -> dict[str, Any]:
        resp = self.request({"type": "set_counter_status", "status": status})
        if resp.get("type") != "counter_status":
            raise RuntimeError(f"could not set counter {self.counter_id} {status}: {resp}")
        return resp

    def publish_status(self) -> None:
        self.mqtt.publish(
            counter_status(self.counter_id, self.namespace),
            {
                "type": "counter_status",
                "counter_id": self.counter_id,
                "current_token": self.current,
                "served_count": self.served_count,
                "no_show_count": self.no_show_count,
                "ts": time.time(),
            },
        )

    def serve_next(self) -> bool:
        """Call and handle one token. False when there was nothing to call."""
        resp = self.request({"type": "call_next"})
        if resp.get("type") == "error":
            # e.g. still holding a token the sweep has not expired yet
            logger.debug("call_next refused for %s: %s", self.counter_id, resp.get("message"))
            return False

        token = resp.get("token")
        if token is None:
            return False

        number = token["token_number"]
        display = token.get("display_number", number)
        self.current = display
        try:
            if self.rng.random() < self.no_show_share:
                self._wait_for_no_show(number, display)
                return True

            minutes = sample_service_minutes(mean_minutes=self.mean_service_minutes, rng=self.rng)
            self._expect(self.request({"type": "start_service", "token_number": number}), "service_started")
            print(f"[counter {self.counter_id}] serving {display} (priority {token.get('priority')}, {minutes:0.1f} min)")
            time.sleep(to_wall_seconds(minutes, time_scale=self.time_scale))

            rating = self.rng.randint(3, 5)
            self._expect(
                self.request({"type": "complete_service", "token_number": number, "rating": rating}),
                "service_completed",
            )
            self.served_count += 1
            print(f"[counter {self.counter_id}] done {display}")
            return True
        finally:
            self.current = None

    def _wait_for_no_show(self, number: str, display: str) -> None:
        print(f"[counter {self.counter_id}] calling {display}, nobody came")
        # A little past the grace period so the manager's clock agrees.
        time.sleep(to_wall_seconds(self.no_show_grace_minutes + 0.1, time_scale=self.time_scale))
        resp = self.request({"type": "mark_no_show", "token_number": number})
        if resp.get("type") == "token_no_show":
            self.no_show_count += 1
        else:
            # The manager's sweep may have been quicker.
            logger.debug("mark_no_show for %s: %s", number, resp)

    def _expect(self, resp: dict[str, Any], kind: str) -> dict[str, Any]:
        if resp.get("type") != kind:
            raise RuntimeError(f"[counter {self.counter_id}] expected {kind}, got {resp}")
        return resp


def run_counter(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    counter_id: str,
    mean_service_minutes: float = 10.0,
    no_show_share: float = 0.05,
    no_show_grace_minutes: float = 5.0,
    time_scale: float = 1.0,
    status_every: float = 2.0,
    seed: int | None = None,
) -> None:
    mqtt = MqttClient(client_id=f"counter-{counter_id}", host=mqtt_host, port=mqtt_port)
    mqtt.start()

    agent = CounterAgent(
        mqtt=mqtt,
        namespace=namespace,
        counter_id=counter_id,
        mean_service_minutes=mean_service_minutes,
        no_show_share=no_show_share,
        no_show_grace_minutes=no_show_grace_minutes,
        time_scale=time_scale,
        rng=random.Random(seed) if seed is not None else None,
    )
    # Each counter listens on its own response topic (point-to-point).
    mqtt.subscribe(agent.reply_topic)

    try:
        agent.set_status("active")
        print(f"[counter {counter_id}] open, mean service {mean_service_minutes} min, time scale x{time_scale}")

        last_status = 0.0
        while True:
            now = time.time()
            if now - last_status >= status_every:
                agent.publish_status()
                last_status = now

            if not agent.serve_next():
                time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        try:
            agent.set_status("closed")
        except (RuntimeError, TimeoutError) as exc:
            logger.warning("could not close counter %s: %s", counter_id, exc)
        mqtt.stop()


def main() -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Counter agent (MQTT)")
    parser.add_argument("--counter-id", required=True)
    parser.add_argument("--mqtt-host", default=settings.mqtt_host)
    parser.add_argument("--mqtt-port", type=int, default=settings.mqtt_port)
    parser.add_argument("--namespace", default=settings.namespace)
    parser.add_argument("--mean-service-minutes", type=float, default=10.0)
    parser.add_argument("--no-show-share", type=float, default=0.05, help="fraction of called customers who never come")
    parser.add_argument("--no-show-grace", type=float, default=5.0, help="minutes, must match the manager")
    parser.add_argument("--time-scale", type=float, default=1.0, help="simulated seconds per wall-clock second")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument(
        "--status-every",
        type=float,
        default=2.0,
        help="seconds between counter status publications",
    )
    args = parser.parse_args()
    configure_logging(settings.log_level)

    run_counter(
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        counter_id=args.counter_id,
        mean_service_minutes=args.mean_service_minutes,
        no_show_share=args.no_show_share,
        no_show_grace_minutes=args.no_show_grace,
        time_scale=args.time_scale,
        status_every=args.status_every,
        seed=args.seed,
    )


if __name__ == "__main__":
    main()
