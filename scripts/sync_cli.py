import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sheetsync.config import get_settings
from sheetsync.integrations.supabase_store import SupabaseJobStore
from sheetsync.sync.pipeline import SyncPipeline
from sheetsync.sync.scheduler import SyncScheduler


def _build_scheduler() -> SyncScheduler:
    settings = get_settings()
    store = SupabaseJobStore(settings)
    if not store.enabled:
        raise RuntimeError("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY are not configured")
    return SyncScheduler(settings, store, SyncPipeline(settings, store))


def _run_job(args: argparse.Namespace) -> int:
    scheduler = _build_scheduler()
    result = scheduler.run_now(args.job_id)
    if result is None:
        print(f"job {args.job_id} is already running")
        return 2
    print(json.dumps(result.to_log_record(), indent=2))
    return 0 if result.succeeded else 1


def _tick(args: argparse.Namespace) -> int:
    scheduler = _build_scheduler()
    dispatched = scheduler.tick()
    print(f"dispatched: {', '.join(dispatched) if dispatched else '<none>'}")
    if args.wait:
        scheduler.join()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run sync jobs outside the API server.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run-job", help="Run one job now and print its run log.")
    run_parser.add_argument("job_id")
    run_parser.set_defaults(handler=_run_job)

    tick_parser = subparsers.add_parser("tick", help="Dispatch every job due right now (one scheduler tick).")
    tick_parser.add_argument("--wait", action="store_true", help="Wait for dispatched runs to finish.")
    tick_parser.set_defaults(handler=_tick)

    args = parser.parse_args()
    sys.exit(args.handler(args))


if __name__ == "__main__":
    main()
