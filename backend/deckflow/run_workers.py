from __future__ import annotations

import argparse
import logging
import signal
import threading

from deckflow.config import JOB_FAMILIES, settings
from deckflow.runtime import build_runtime
from deckflow.services.maintenance import run_maintenance
from deckflow.worker import Worker


logger = logging.getLogger("deckflow.worker")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run deckflow job workers.")
    parser.add_argument(
        "--families",
        nargs="+",
        choices=JOB_FAMILIES,
        default=list(JOB_FAMILIES),
        help="Job families this process consumes.",
    )
    parser.add_argument("--worker-id", default=None, help="Lease owner id (defaults to host:pid:random).")
    parser.add_argument(
        "--maintenance-interval",
        type=float,
        default=0,
        help="Also run stalled recovery, reconciliation and purge every N seconds (0 disables; use Celery beat instead).",
    )
    return parser.parse_args(argv)


def _maintenance_loop(runtime, interval: float, stopping: threading.Event) -> None:
    while not stopping.wait(interval):
        try:
            summary = run_maintenance(runtime)
        except Exception:
            logger.exception("maintenance_pass_failed")
            continue
        if summary["stalled"] or summary["requeued"]:
            logger.info("maintenance_pass stalled=%s requeued=%s", summary["stalled"], summary["requeued"])


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(settings.log_level).upper(), logging.INFO))
    runtime = build_runtime()
    worker = Worker(runtime, families=args.families, worker_id=args.worker_id)
    stopping = threading.Event()

    def _shutdown(signum, _frame):
        logger.info("worker_signal signal=%s", signal.Signals(signum).name)
        stopping.set()
        worker.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    if args.maintenance_interval > 0:
        threading.Thread(
            target=_maintenance_loop,
            args=(runtime, args.maintenance_interval, stopping),
            name="deckflow-maintenance",
            daemon=True,
        ).start()

    try:
        worker.run_forever()
    finally:
        stopping.set()
        runtime.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
