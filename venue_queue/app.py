from __future__ import annotations

# Single entrypoint.
#
#   python -m venue_queue.app serve [--seed-file venues.json]
#   python -m venue_queue.app request <type> --field key=value ...
#
# Each subcommand forwards its arguments to the module that implements it.

import argparse
import sys


def main(argv: list[str] | None = None) -> None:
    argv = sys.argv[1:] if argv is None else argv

    parser = argparse.ArgumentParser(description="Venue queue service (MQTT) - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)
    sub.add_parser(
        "serve",
        help="Run the venue service (waitlist state machine, countdowns, kitchen alerts)",
        add_help=False,
    )
    sub.add_parser("request", help="Send one request to a running service", add_help=False)

    args, rest = parser.parse_known_args(argv)

    if args.cmd == "serve":
        from .service import main as run

        run(rest)
        return

    if args.cmd == "request":
        from .client import main as run

        run(rest)
        return


if __name__ == "__main__":
    main()
