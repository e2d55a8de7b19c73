from __future__ import annotations

# Single-command runner.
#
# This module starts a full local system from one command by spawning child
# processes:
# - manager (demo directory: departments CS and AC)
# - N counters per department
# - generator (Poisson arrivals)
#
# All of them share one time scale, so a demo day passes in minutes while the
# recorded wait and service figures stay in realistic minutes.

import argparse
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass

from .config import load_settings

DEMO_DEPARTMENTS = ("CS", "AC")


@dataclass
class Child:
    name: str
    proc: subprocess.Popen


def run_all(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    counters_per_department: int,
    arrival_rate: float,
    seed: int | None,
    mean_service_minutes: float,
    no_show_share: float,
    no_show_grace_minutes: float,
    time_scale: float,
) -> None:
    if counters_per_department <= 0:
        raise ValueError("counters_per_department must be > 0")
    if arrival_rate <= 0:
        raise ValueError("arrival_rate must be > 0")
    if time_scale <= 0:
        raise ValueError("time_scale must be > 0")

    python = sys.executable
    mqtt_args = ["--mqtt-host", mqtt_host, "--mqtt-port", str(mqtt_port), "--namespace", namespace]

    # Put each child in its own process group so Ctrl+C can stop everything.
    def popen(name: str, args: list[str]) -> Child:
        proc = subprocess.Popen(
            args,
            preexec_fn=os.setsid,
        )
        return Child(name=name, proc=proc)

    children: list[Child] = []

    mgr_args = [
        python,
        "-m",
        "token_queue.manager",
        *mqtt_args,
        "--counters-per-department",
        str(counters_per_department),
        "--no-show-grace",
        str(no_show_grace_minutes),
        "--time-scale",
        str(time_scale),
    ]
    children.append(popen("manager", mgr_args))

    # Small delay so the manager connects before others start sending requests.
    time.sleep(0.5)

    for department_id in DEMO_DEPARTMENTS:
        for i in range(1, counters_per_department + 1):
            cid = f"{department_id}-{i}"
            ctr_args = [
                python,
                "-m",
                "token_queue.counter",
                "--counter-id",
                cid,
                *mqtt_args,
                "--mean-service-minutes",
                str(mean_service_minutes),
                "--no-show-share",
                str(no_show_share),
                "--no-show-grace",
                str(no_show_grace_minutes),
                "--time-scale",
                str(time_scale),
            ]
            if seed is not None:
                ctr_args += ["--seed", str(seed + len(children))]
            children.append(popen(f"counter-{cid}", ctr_args))

    gen_args = [
        python,
        "-m",
        "token_queue.generator",
        *mqtt_args,
        "--rate",
        str(arrival_rate),
        "--departments",
        ",".join(DEMO_DEPARTMENTS),
    ]
    if seed is not None:
        gen_args += ["--seed", str(seed)]
    children.append(popen("generator", gen_args))

    print(
        "[run] started: "
        + ", ".join(f"{c.name}(pid={c.proc.pid})" for c in children)
        + "\nPress Ctrl+C to stop all."
    )

    try:
        # Wait until any child exits unexpectedly.
        while True:
            for c in children:
                rc = c.proc.poll()
                if rc is not None:
                    raise RuntimeError(f"Child {c.name} exited with code {rc}")
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        _terminate_children(children)


def _signal_group(child: Child, sig: signal.Signals) -> None:
    try:
        os.killpg(os.getpgid(child.proc.pid), sig)
    except ProcessLookupError:
        # Exited between poll() and the signal.
        pass


def _terminate_children(children: list[Child]) -> None:
    # Try graceful termination.
    for c in children:
        if c.proc.poll() is None:
            _signal_group(c, signal.SIGTERM)

    # Wait a bit.
    deadline = time.time() + 2.0
    while time.time() < deadline:
        if all(c.proc.poll() is not None for c in children):
            return
        time.sleep(0.1)

    # Force kill.
    for c in children:
        if c.proc.poll() is None:
            _signal_group(c, signal.SIGKILL)


def main() -> None:
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Run manager + counters + generator")
    parser.add_argument("--mqtt-host", default=settings.mqtt_host)
    parser.add_argument("--mqtt-port", type=int, default=settings.mqtt_port)
    parser.add_argument("--namespace", default=f"tokenq/run/{int(time.time())}")
    parser.add_argument("--counters-per-department", type=int, default=2)
    parser.add_argument("--arrival-rate", type=float, required=True, help="λ customers/second")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--mean-service-minutes", type=float, default=10.0)
    parser.add_argument("--no-show-share", type=float, default=0.05)
    parser.add_argument("--no-show-grace", type=float, default=5.0, help="minutes")
    parser.add_argument("--time-scale", type=float, default=60.0, help="simulated seconds per wall-clock second")
    args = parser.parse_args()

    run_all(
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        counters_per_department=args.counters_per_department,
        arrival_rate=args.arrival_rate,
        seed=args.seed,
        mean_service_minutes=args.mean_service_minutes,
        no_show_share=args.no_show_share,
        no_show_grace_minutes=args.no_show_grace,
        time_scale=args.time_scale,
    )


if __name__ == "__main__":
    main()
