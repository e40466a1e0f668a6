from __future__ import annotations

# Single-entrypoint runner.
#
# Primary way to run the service:
#     python -m salon_queue.app serve --seed seed.example.json
#
# The other subcommands are thin clients: each sends one request to a
# running service and prints the reply, except `watch`, which follows a
# salon's or a user's event stream until interrupted.

import argparse
import json
from typing import Any


def main() -> None:
    parser = argparse.ArgumentParser(description="Salon queue system (MQTT) - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_mqtt_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--mqtt-host", default="127.0.0.1")
        p.add_argument("--mqtt-port", type=int, default=1883)
        p.add_argument("--namespace", default="salons/v1")

    def add_client_args(p: argparse.ArgumentParser) -> None:
        add_mqtt_args(p)
        p.add_argument("--token", required=True, help="caller's auth token")

    # ---- Service ----
    p_serve = sub.add_parser("serve", help="Start the queue service")
    add_mqtt_args(p_serve)
    p_serve.add_argument("--seed", required=True, help="JSON file with salons and users")
    p_serve.add_argument("--sweep-every", type=float, default=None, help="seconds between lifecycle sweeps")

    # ---- Customer requests ----
    p_join = sub.add_parser("join", help="Join a salon's queue")
    add_client_args(p_join)
    p_join.add_argument("--salon-id", required=True)
    p_join.add_argument("--service", dest="service_ids", action="append", required=True, help="repeat per service")

    p_leave = sub.add_parser("leave", help="Leave a queue")
    add_client_args(p_leave)
    p_leave.add_argument("--entry-id", required=True)

    p_check = sub.add_parser("check-in", help="Report arrival at the salon")
    add_client_args(p_check)
    p_check.add_argument("--entry-id", required=True)
    p_check.add_argument("--lat", type=float, default=None)
    p_check.add_argument("--lon", type=float, default=None)
    p_check.add_argument("--accuracy", type=float, default=None, help="reported GPS accuracy in meters")

    p_mine = sub.add_parser("mine", help="List my queue entries")
    add_client_args(p_mine)
    p_mine.add_argument("--history", action="store_true", help="include finished entries")

    # ---- Staff requests ----
    p_adv = sub.add_parser("advance", help="(staff) Start service for the next customer")
    add_client_args(p_adv)
    p_adv.add_argument("--salon-id", required=True)

    p_done = sub.add_parser("complete", help="(staff) Complete the service in progress")
    add_client_args(p_done)
    p_done.add_argument("--entry-id", required=True)

    p_conf = sub.add_parser("confirm", help="(staff) Confirm or reject a pending arrival")
    add_client_args(p_conf)
    p_conf.add_argument("--entry-id", required=True)
    p_conf.add_argument("--reject", action="store_true")

    p_notify = sub.add_parser("notify", help="(staff) Tell a waiting customer to come in")
    add_client_args(p_notify)
    p_notify.add_argument("--entry-id", required=True)
    p_notify.add_argument("--minutes", type=int, help="minutes until the chair is free (default: current estimate)")

    # ---- Observers ----
    p_rep = sub.add_parser("reputation", help="Show a reputation score (staff may pass --user-id)")
    add_client_args(p_rep)
    p_rep.add_argument("--user-id")

    p_hist = sub.add_parser("attempts", help="List the check-in attempts of an entry")
    add_client_args(p_hist)
    p_hist.add_argument("--entry-id", required=True)

    p_snap = sub.add_parser("snapshot", help="Print a salon's current queue")
    add_client_args(p_snap)
    p_snap.add_argument("--salon-id", required=True)

    p_watch = sub.add_parser("watch", help="Follow a salon's or a user's event stream")
    add_client_args(p_watch)
    target = p_watch.add_mutually_exclusive_group(required=True)
    target.add_argument("--salon-id")
    target.add_argument("--user-id")

    args = parser.parse_args()

    if args.cmd == "serve":
        from .service import main as run

        run_args = [
            "--seed",
            args.seed,
            "--mqtt-host",
            args.mqtt_host,
            "--mqtt-port",
            str(args.mqtt_port),
            "--namespace",
            args.namespace,
        ]
        if args.sweep_every is not None:
            run_args += ["--sweep-every", str(args.sweep_every)]

        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "watch":
        from .client import watch

        watch(
            mqtt_host=args.mqtt_host,
            mqtt_port=args.mqtt_port,
            namespace=args.namespace,
            token=args.token,
            salon_id=args.salon_id,
            user_id=args.user_id,
            on_event=_print,
        )
        return

    _print(_send(args, _request_for(args)))


def _request_for(args: argparse.Namespace) -> dict[str, Any]:
    if args.cmd == "join":
        return {"type": "join_queue", "salon_id": args.salon_id, "service_ids": args.service_ids}
    if args.cmd == "leave":
        return {"type": "leave_queue", "entry_id": args.entry_id}
    if args.cmd == "check-in":
        return {
            "type": "check_in",
            "entry_id": args.entry_id,
            "latitude": args.lat,
            "longitude": args.lon,
            "accuracy": args.accuracy,
        }
    if args.cmd == "mine":
        return {"type": "my_entries", "include_history": args.history}
    if args.cmd == "advance":
        return {"type": "staff_advance", "salon_id": args.salon_id}
    if args.cmd == "complete":
        return {"type": "staff_complete", "entry_id": args.entry_id}
    if args.cmd == "confirm":
        return {"type": "staff_confirm", "entry_id": args.entry_id, "confirmed": not args.reject}
    if args.cmd == "notify":
        message: dict[str, Any] = {"type": "staff_notify", "entry_id": args.entry_id}
        if args.minutes is not None:
            message["estimated_minutes"] = args.minutes
        return message
    if args.cmd == "reputation":
        return {"type": "reputation", "user_id": args.user_id}
    if args.cmd == "attempts":
        return {"type": "check_in_history", "entry_id": args.entry_id}
    if args.cmd == "snapshot":
        return {"type": "queue_snapshot", "salon_id": args.salon_id}
    raise ValueError(f"unknown command: {args.cmd}")


def _send(args: argparse.Namespace, message: dict[str, Any]) -> dict[str, Any]:
    from .client import send_request

    message["token"] = args.token
    return send_request(
        mqtt_host=args.mqtt_host,
        mqtt_port=args.mqtt_port,
        namespace=args.namespace,
        message=message,
    )


def _print(message: dict[str, Any]) -> None:
    print(json.dumps(message, indent=2, sort_keys=True))


def _dispatch_to_module_main(module_main, argv: list[str]) -> None:
    import sys

    old_argv = sys.argv[:]
    try:
        sys.argv = [old_argv[0], *argv]
        module_main()
    finally:
        sys.argv = old_argv


if __name__ == "__main__":
    main()
