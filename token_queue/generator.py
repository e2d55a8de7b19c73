from __future__ import annotations

# Customer generator (normal system component).
#
# This process simulates a stream of walk-in customers and uses the exact same
# MQTT request/response protocol as the interactive `kiosk` CLI.
#
# Poisson arrival model:
# - Customers arrive according to a Poisson process with rate λ (customers/sec)
# - Inter-arrival times are exponential with mean 1/λ
# - Each customer picks a department and a service type uniformly; a small
#   share arrives with a raised priority.

import argparse
import random
import time

from .arrival import sample_choice, sample_exponential_interarrival, sample_priority
from .config import configure_logging, load_settings
from .mqtt_client import MqttClient
from .mqtt_topics import manager_requests, manager_responses


def run_generator(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    rate_per_sec: float,
    departments: list[str],
    service_types: list[str] | None = None,
    urgent_share: float = 0.1,
    id_prefix: str = "cust",
    max_customers: int | None = None,
    seed: int | None = None,
) -> None:
    """Generate customers indefinitely (or for max_customers).

    Args:
        rate_per_sec: λ, customers per second.
        departments: department ids customers are spread over.
        urgent_share: fraction of customers with a priority above the default.
        max_customers: if provided, stop after emitting this many customers.
        seed: if provided, makes arrivals deterministic.
    """
    if not departments:
        raise ValueError("departments must not be empty")
    service_types = service_types or ["general"]
    rng = random.Random(seed) if seed is not None else None

    client_id = f"generator-{int(time.time())}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()

    reply_topic = manager_responses(client_id, namespace)
    mqtt.subscribe(reply_topic)

    print(
        f"[generator] connected to MQTT {mqtt_host}:{mqtt_port}, namespace={namespace}, "
        f"rate={rate_per_sec} cust/s, departments={','.join(departments)}"
    )

    i = 0
    try:
        while True:
            if max_customers is not None and i >= max_customers:
                print(f"[generator] reached max_customers={max_customers}, stopping")
                return

            # Wait for the next arrival.
            dt = sample_exponential_interarrival(rate_per_sec=rate_per_sec, rng=rng)
            time.sleep(dt)

            i += 1
            customer_id = f"{id_prefix}{i}"
            department_id = sample_choice(departments, rng=rng)
            priority = sample_priority(urgent_share=urgent_share, rng=rng)
            service_type = sample_choice(service_types, rng=rng)

            resp = mqtt.request(
                request_topic=manager_requests(namespace),
                response_topic=reply_topic,
                message={
                    "type": "issue_token",
                    "customer_id": customer_id,
                    "department_id": department_id,
                    "priority": priority,
                    "service_type": service_type,
                },
                timeout=5.0,
            )

            if resp.get("type") == "token_issued":
                token = resp["token"]
                print(
                    f"[generator] {customer_id} p={priority} {service_type} -> {token['display_number']} "
                    f"(pos {token['queue_position']}, ~{resp.get('estimated_wait_minutes')} min, dt={dt:0.2f}s)"
                )
            else:
                print(f"[generator] {customer_id} -> error {resp.get('code')}: {resp.get('message')} (dt={dt:0.2f}s)")

    except KeyboardInterrupt:
        pass
    finally:
        mqtt.stop()


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    parser = argparse.ArgumentParser(description="Customer generator (Poisson arrivals over MQTT)")
    parser.add_argument("--mqtt-host", default=settings.mqtt_host)
    parser.add_argument("--mqtt-port", type=int, default=settings.mqtt_port)
    parser.add_argument("--namespace", default=settings.namespace)
    parser.add_argument(
        "--rate",
        type=float,
        required=True,
        help="arrival rate λ in customers/second (Poisson process)",
    )
    parser.add_argument("--departments", default="CS,AC", help="comma-separated department ids")
    parser.add_argument("--service-types", default="general", help="comma-separated service types")
    parser.add_argument("--urgent-share", type=float, default=0.1)
    parser.add_argument("--id-prefix", default="cust")
    parser.add_argument("--max-customers", type=int, default=None)
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    run_generator(
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        rate_per_sec=args.rate,
        departments=_split(args.departments),
        service_types=_split(args.service_types),
        urgent_share=args.urgent_share,
        id_prefix=args.id_prefix,
        max_customers=args.max_customers,
        seed=args.seed,
    )


def _split(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


if __name__ == "__main__":
    main()
