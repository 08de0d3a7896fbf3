"""Simple CLI for running a local ensemble until interrupted.

Usage:
    python start_ensemble.py [--size N] [--client-ports P1,P2,...] \
        [--base-dir PATH] [--event-log PATH] [--log-level LEVEL]

Values default to environment variables ENSEMBLE_SIZE, ENSEMBLE_CLIENT_PORTS,
ENSEMBLE_BASE_DIR, ENSEMBLE_EVENT_LOG and ENSEMBLE_LOG_LEVEL when set. When
client ports are given they decide the ensemble size.
"""

import argparse
import logging
import os
import time
from typing import List

from ensemble.testing import LocalEnsemble, make_specs


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    env = os.environ
    parser = argparse.ArgumentParser(description="Run a local quorum ensemble")
    parser.add_argument("--size", type=int, default=int(env.get("ENSEMBLE_SIZE", 3)))
    parser.add_argument(
        "--client-ports",
        dest="client_ports",
        default=env.get("ENSEMBLE_CLIENT_PORTS", ""),
    )
    parser.add_argument("--base-dir", dest="base_dir", default=env.get("ENSEMBLE_BASE_DIR"))
    parser.add_argument("--event-log", dest="event_log", default=env.get("ENSEMBLE_EVENT_LOG"))
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=env.get("ENSEMBLE_LOG_LEVEL", "INFO"),
    )
    return parser.parse_args(argv)


def _parse_ports(ports_str: str) -> List[int]:
    return [int(item) for item in filter(None, (p.strip() for p in ports_str.split(",")))]


def wait_for_interrupt() -> None:
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass


def main(argv: List[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ports = _parse_ports(args.client_ports)
    size = len(ports) if ports else args.size
    specs = make_specs(size, base_dir=args.base_dir, client_ports=ports)
    cluster = LocalEnsemble(*specs, event_log_path=args.event_log)
    try:
        cluster.start()
        print(cluster.get_connect_string(), flush=True)
        wait_for_interrupt()
    finally:
        cluster.close()


if __name__ == "__main__":
    main()
