"""
buildlock-admin (operator tool for compile locks)

Subcommands:
  exists NAME              is the build-completion marker for NAME present?
  status NAME              lease state + heartbeat age of compile-NAME, as JSON
  reclaim NAME             run the stale-lock check once (force-clears only stale locks)
  run NAME -- CMD [ARGS]   hold compile-NAME while CMD runs, then release

Usage:
  python -m buildlock.admin_cli status libfoo
  python -m buildlock.admin_cli run libfoo --strict -- make -j8
"""

from __future__ import annotations

import argparse
import json
import subprocess
import sys
from typing import List, Optional

from buildlock import open_lock_manager
from buildlock.config import load_settings
from buildlock.logging import get_logger
from buildlock.telemetry import Metrics, log_action, start_metrics_http_server

SERVICE = "buildlock-admin"

# EX_TEMPFAIL: lock not obtained under --strict
EXIT_NOT_ACQUIRED = 75


def _print(obj) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="buildlock-admin", description="Compile lock operator tool")
    p.add_argument("--redis-url", default=None, help="override REDIS_URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    for name in ("exists", "status", "reclaim"):
        sp = sub.add_parser(name)
        sp.add_argument("name")

    sp = sub.add_parser("run")
    sp.add_argument("name")
    sp.add_argument("--strict", action="store_true", help="do not run CMD unless the lock was acquired")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    # everything after "--" is the command for `run`
    command: List[str] = []
    if "--" in argv:
        i = argv.index("--")
        argv, command = argv[:i], argv[i + 1:]
    args = build_parser().parse_args(argv)
    overrides = {"redis_url": args.redis_url} if args.redis_url else {}
    settings = load_settings(**overrides)
    logger = get_logger(SERVICE, settings.log_level)

    metrics = None
    if settings.metrics_port > 0:
        metrics = Metrics(SERVICE)
        start_metrics_http_server(settings.metrics_port)

    with open_lock_manager(settings, metrics=metrics, logger=logger) as mgr:
        if args.cmd == "exists":
            ok = mgr.check_existence(args.name)
            _print({"name": args.name, "key": mgr.marker_key(args.name), "exists": ok})
            return 0 if ok else 1

        if args.cmd == "status":
            _print(mgr.status(args.name))
            return 0

        if args.cmd == "reclaim":
            ok = mgr.try_reclaim(args.name)
            _print({"resource": mgr.resource_key(args.name), "free": ok})
            return 0 if ok else 1

        if not command:
            print("run: missing command after --", file=sys.stderr)
            return 2

        with mgr.compile_lock(args.name) as acquired:
            if not acquired:
                log_action(logger, "LOCK_NOT_ACQUIRED", resource=mgr.resource_key(args.name), strict=args.strict)
                if args.strict:
                    return EXIT_NOT_ACQUIRED
            return subprocess.run(command).returncode


if __name__ == "__main__":
    raise SystemExit(main())
