from __future__ import annotations

# Kiosk client.
#
# A kiosk request is a short-lived process:
# - connect to broker
# - publish an issue_token request
# - wait for the response
# - print the ticket (or the error) and exit

import argparse
import time
from typing import Any

from .config import load_settings
from .mqtt_client import MqttClient
from .mqtt_topics import manager_requests, manager_responses


def issue_token(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    customer_id: str,
    department_id: str,
    priority: int = 5,
    service_type: str = "general",
) -> dict[str, Any]:
    # Unique client id so several kiosks can run concurrently.
    client_id = f"kiosk-{customer_id}-{int(time.time() * 1000)}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()

    reply_topic = manager_responses(client_id, namespace)
    mqtt.subscribe(reply_topic)

    try:
        return mqtt.request(
            request_topic=manager_requests(namespace),
            response_topic=reply_topic,
            message={
                "type": "issue_token",
                "customer_id": customer_id,
                "department_id": department_id,
                "priority": int(priority),
                "service_type": service_type,
            },
            timeout=5.0,
        )
    finally:
        mqtt.stop()


def describe(resp: dict[str, Any]) -> str:
    if resp.get("type") != "token_issued":
        return f"error {resp.get('code')}: {resp.get('message')}"
    token = resp["token"]
    text = f"ticket {token['display_number']} ({token['token_number']}), position {token['queue_position']}"
    if resp.get("estimated_wait_minutes") is not None:
        text += f", about {resp['estimated_wait_minutes']:0.0f} min"
    return text


def main() -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Kiosk client (MQTT): take a ticket")
    parser.add_argument("--customer-id", required=True)
    parser.add_argument("--department", required=True)
    parser.add_argument("--priority", type=int, default=5, help="1 (lowest) .. 10 (highest)")
    parser.add_argument("--service-type", default="general")
    parser.add_argument("--mqtt-host", default=settings.mqtt_host)
    parser.add_argument("--mqtt-port", type=int, default=settings.mqtt_port)
    parser.add_argument("--namespace", default=settings.namespace)
    args = parser.parse_args()

    resp = issue_token(
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        customer_id=args.customer_id,
        department_id=args.department,
        priority=args.priority,
        service_type=args.service_type,
    )
    print(f"[kiosk {args.customer_id}] {describe(resp)}")


if __name__ == "__main__":
    main()
