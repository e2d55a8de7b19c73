from __future__ import annotations

# Single-entrypoint runner.
#
# The primary way to run the project is the single command:
#     python -m token_queue.app run --arrival-rate LAMBDA [--counters-per-department N]
#
# The other subcommands start one component each, for debugging and for
# deployments where components run on different hosts.

import argparse
import sys
from typing import Callable


def main() -> None:
    parser = argparse.ArgumentParser(description="Token Queue System (MQTT) - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_mqtt_args(p: argparse.ArgumentParser) -> None:
        # None means "take the module's default" (.env / environment).
        p.add_argument("--mqtt-host", default=None)
        p.add_argument("--mqtt-port", type=int, default=None)
        p.add_argument("--namespace", default=None)

    # ---- Normal operation: one command ----
    p_run = sub.add_parser("run", help="Start manager + counters + generator")
    add_mqtt_args(p_run)
    p_run.add_argument("--counters-per-department", type=int, default=2)
    p_run.add_argument("--arrival-rate", type=float, required=True, help="λ customers/second")
    p_run.add_argument("--seed", type=int, default=None)
    p_run.add_argument("--mean-service-minutes", type=float, default=10.0)
    p_run.add_argument("--time-scale", type=float, default=60.0)

    # ---- Single components ----
    p_mgr = sub.add_parser("manager", help="Start the queue manager only")
    add_mqtt_args(p_mgr)
    p_mgr.add_argument("--directory", default=None, help="JSON file with departments and counters")
    p_mgr.add_argument("--time-scale", type=float, default=1.0)

    p_ctr = sub.add_parser("counter", help="Start a single counter agent")
    add_mqtt_args(p_ctr)
    p_ctr.add_argument("--counter-id", required=True)
    p_ctr.add_argument("--mean-service-minutes", type=float, default=10.0)
    p_ctr.add_argument("--time-scale", type=float, default=1.0)

    p_kiosk = sub.add_parser("kiosk", help="Take one ticket")
    add_mqtt_args(p_kiosk)
    p_kiosk.add_argument("--customer-id", required=True)
    p_kiosk.add_argument("--department", required=True)
    p_kiosk.add_argument("--priority", type=int, default=5)
    p_kiosk.add_argument("--service-type", default="general")

    args = parser.parse_args()
    mqtt_args = _mqtt_argv(args)

    if args.cmd == "run":
        from .run_all import main as run

        run_args = [
            *mqtt_args,
            "--counters-per-department",
            str(args.counters_per_department),
            "--arrival-rate",
            str(args.arrival_rate),
            "--mean-service-minutes",
            str(args.mean_service_minutes),
            "--time-scale",
            str(args.time_scale),
        ]
        if args.seed is not None:
            run_args += ["--seed", str(args.seed)]
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "manager":
        from .manager import main as run

        run_args = [*mqtt_args, "--time-scale", str(args.time_scale)]
        if args.directory is not None:
            run_args += ["--directory", args.directory]
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "counter":
        from .counter import main as run

        run_args = [
            "--counter-id",
            args.counter_id,
            *mqtt_args,
            "--mean-service-minutes",
            str(args.mean_service_minutes),
            "--time-scale",
            str(args.time_scale),
        ]
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "kiosk":
        from .kiosk import main as run

        run_args = [
            "--customer-id",
            args.customer_id,
            "--department",
            args.department,
            "--priority",
            str(args.priority),
            "--service-type",
            args.service_type,
            *mqtt_args,
        ]
        _dispatch_to_module_main(run, run_args)
        return


def _mqtt_argv(args: argparse.Namespace) -> list[str]:
    argv: list[str] = []
    if args.mqtt_host is not None:
        argv += ["--mqtt-host", args.mqtt_host]
    if args.mqtt_port is not None:
        argv += ["--mqtt-port", str(args.mqtt_port)]
    if args.namespace is not None:
        argv += ["--namespace", args.namespace]
    return argv


def _dispatch_to_module_main(module_main: Callable[[], None], argv: list[str]) -> None:
    old_argv = sys.argv[:]
    try:
        sys.argv = [old_argv[0], *argv]
        module_main()
    finally:
        sys.argv = old_argv


if __name__ == "__main__":
    main()
