import argparse
import sys
from datetime import datetime
from pathlib import Path

import cv2

from edge_attendance.config import get_settings
from edge_attendance.exceptions import AttendanceError, MalformedInputError
from edge_attendance.logger import setup_logger
from edge_attendance.runtime import EdgeRuntime
from edge_attendance.types import EventType, VerificationOutcome


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Offline-first face verification attendance terminal"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    enroll = subparsers.add_parser("enroll", help="Enroll or update an identity from a face image")
    enroll.add_argument("--id", required=True, dest="identity_id", help="Identity ID")
    enroll.add_argument("--name", required=True, help="Display name")
    enroll.add_argument("--department", default="", help="Department")
    enroll.add_argument("--image", type=Path, required=True, help="Face image path")
    enroll.add_argument("--skip-liveness", action="store_true", help="Enroll without the liveness gate")

    verify = subparsers.add_parser("verify", help="Verify a face against a claimed identity")
    verify.add_argument("--id", required=True, dest="identity_id", help="Claimed identity ID")
    verify.add_argument(
        "--image",
        type=Path,
        nargs="+",
        required=True,
        help="Face image path; pass 3 or more frames for multi-frame liveness",
    )
    verify.add_argument("--skip-liveness", action="store_true", help="Verify without the liveness gate")

    identify = subparsers.add_parser("identify", help="Identify who is in a face image")
    identify.add_argument("--image", type=Path, required=True, help="Face image path")
    identify.add_argument("--skip-liveness", action="store_true", help="Identify without the liveness gate")

    checkin = subparsers.add_parser("checkin", help="Verify a face and record attendance")
    checkin.add_argument("--id", required=True, dest="identity_id", help="Claimed identity ID")
    checkin.add_argument("--image", type=Path, nargs="+", required=True, help="Face image path(s)")
    checkin.add_argument(
        "--event",
        choices=[event.value for event in EventType],
        default=None,
        help="Event type (default: alternate ENTRY/EXIT)",
    )
    checkin.add_argument("--skip-liveness", action="store_true", help="Verify without the liveness gate")

    subparsers.add_parser("sync", help="Push pending attendance records now")

    subparsers.add_parser("status", help="Show connectivity and sync status")

    list_cmd = subparsers.add_parser("list-identities", help="List enrolled identities")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    prune = subparsers.add_parser("prune", help="Delete attendance records older than N days")
    prune.add_argument("--days", type=int, default=None, help="Retention in days (default from settings)")

    return parser


def load_image(path: Path):
    image = cv2.imread(str(path))
    if image is None:
        raise MalformedInputError(f"Could not read image: {path}")
    return image


def verify_images(runtime: EdgeRuntime, identity_id: str, paths: list[Path], skip_liveness: bool) -> VerificationOutcome:
    require = False if skip_liveness else None
    frames = [load_image(path) for path in paths]
    if len(frames) == 1:
        return runtime.orchestrator.verify(frames[0], identity_id, require_liveness=require)
    return runtime.orchestrator.verify_burst(frames, identity_id, require_liveness=require)


def print_outcome(outcome: VerificationOutcome) -> None:
    status = "MATCH" if outcome.matched else "NO MATCH"
    print(f"{status}: {outcome.message}")
    print(f"  similarity={outcome.confidence:.3f} liveness={outcome.liveness_confidence:.3f}")
    if outcome.identity_id:
        print(f"  identity={outcome.identity_id}")
    if outcome.remote_candidate:
        print(f"  remote candidate={outcome.remote_candidate}")


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        runtime = EdgeRuntime(get_settings())

        if args.command == "enroll":
            runtime.check_connectivity()
            result = runtime.orchestrator.enroll(
                load_image(args.image),
                identity_id=args.identity_id,
                display_name=args.name,
                department=args.department,
                require_liveness=False if args.skip_liveness else None,
            )
            print(result.message)
            return 0 if result.success else 1

        if args.command == "verify":
            runtime.check_connectivity()
            outcome = verify_images(runtime, args.identity_id, args.image, args.skip_liveness)
            print_outcome(outcome)
            return 0 if outcome.matched else 1

        if args.command == "identify":
            runtime.check_connectivity()
            outcome = runtime.orchestrator.identify(
                load_image(args.image),
                require_liveness=False if args.skip_liveness else None,
            )
            print_outcome(outcome)
            return 0 if outcome.matched else 1

        if args.command == "checkin":
            runtime.check_connectivity()
            outcome = verify_images(runtime, args.identity_id, args.image, args.skip_liveness)
            event = EventType(args.event) if args.event else None
            record = runtime.attendance.capture(args.identity_id, outcome, event_type=event)
            print(f"Recorded {record.event_type.value} for {record.identity_id} ({record.mode.value}).")
            print_outcome(outcome)
            return 0 if outcome.matched else 1

        if args.command == "sync":
            if runtime.sync_engine is None:
                print("Sync is disabled or no attendance API is configured.")
                return 1
            runtime.check_connectivity()
            ok = runtime.sync_engine.sync_now("Manual sync")
            state = runtime.sync_engine.state.value
            print(state.message)
            print(f"  synced={state.synced_count} failed={state.failed_count} pending={state.pending_count}")
            return 0 if ok else 1

        if args.command == "status":
            online = runtime.check_connectivity()
            print(f"Device:     {runtime.settings.device_id}")
            print(f"Network:    {'online' if online else 'offline'}")
            print(f"Enrolled:   {runtime.identity_store.count()}")
            print(f"Pending:    {runtime.queue.count_unsynced()}")
            if runtime.sync_engine is not None:
                print(f"Last sync:  {runtime.sync_engine.formatted_last_sync()}")
            return 0

        if args.command == "list-identities":
            identities = runtime.identity_store.list_identities()
            if not identities:
                print("No identities enrolled.")
                return 0

            print(f"{'Identity ID':<16} {'Name':<24} {'Department':<16} {'Enrolled'}")
            print("-" * 76)
            for identity in identities[: args.limit]:
                enrolled = datetime.fromtimestamp(identity.enrollment_time / 1000).strftime("%Y-%m-%d %H:%M")
                print(f"{identity.identity_id:<16} {identity.display_name:<24} {identity.department:<16} {enrolled}")
            return 0

        if args.command == "prune":
            days = args.days if args.days is not None else runtime.settings.retention_days
            removed = runtime.queue.prune_older_than(days)
            print(f"Removed {removed} attendance records older than {days} days.")
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
