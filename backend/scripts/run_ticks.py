#!/usr/bin/env python3
"""Ejecuta los jobs periódicos del API cuando no hay un cron externo disponible."""

from __future__ import annotations

import argparse
import os
import sys
import time
from typing import Iterable

import httpx

JOBS: tuple[str, ...] = (
    "queue-tick",
    "idle-sweep",
    "evaluate",
    "transfer",
    "delivery-check",
    "queue-cleanup",
)


def run_once(
    client: httpx.Client,
    jobs: Iterable[str],
    *,
    cron_secret: str | None = None,
) -> dict[str, dict[str, object]]:
    """Llama cada job en orden; un job fallido no impide los siguientes."""
    headers = {"X-Cron-Secret": cron_secret} if cron_secret else {}
    results: dict[str, dict[str, object]] = {}
    for job in jobs:
        try:
            response = client.post(f"/jobs/{job}", headers=headers)
        except httpx.RequestError as exc:
            results[job] = {"ok": False, "error": str(exc)}
            continue
        body: object
        try:
            body = response.json()
        except ValueError:
            body = response.text
        results[job] = {"ok": response.status_code < 400, "status": response.status_code, "body": body}
    return results


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Dispara los jobs de cola, inactividad, evaluación, traspaso y entregas. "
            "Sin --interval se ejecuta una sola vez."
        )
    )
    parser.add_argument(
        "--base-url",
        default=os.getenv("LEADROUTER_API_URL", "http://localhost:8000/api"),
        help="URL base del API (default: LEADROUTER_API_URL o http://localhost:8000/api).",
    )
    parser.add_argument(
        "--cron-secret",
        default=os.getenv("LEADROUTER_CRON_SECRET"),
        help="Valor de X-Cron-Secret. Por defecto LEADROUTER_CRON_SECRET.",
    )
    parser.add_argument(
        "--job",
        action="append",
        choices=JOBS,
        dest="jobs",
        help="Job a ejecutar; repetible. Sin valor se ejecutan todos en orden.",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=0.0,
        help="Segundos entre rondas. 0 (default) ejecuta una sola ronda.",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Número máximo de rondas con --interval; 0 es indefinido.",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Reduce el output a sólo errores.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    jobs = args.jobs or list(JOBS)
    rounds = 0
    failed = False
    with httpx.Client(base_url=args.base_url.rstrip("/"), timeout=120.0) as client:
        while True:
            rounds += 1
            for job, outcome in run_once(client, jobs, cron_secret=args.cron_secret).items():
                if not outcome["ok"]:
                    failed = True
                    print(f"[run_ticks] ERROR {job}: {outcome}", file=sys.stderr)
                elif not args.quiet:
                    print(f"[run_ticks] {job}: {outcome['body']}")
            if args.interval <= 0 or (args.iterations and rounds >= args.iterations):
                break
            time.sleep(args.interval)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
