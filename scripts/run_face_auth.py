"""
Face Authentication from the Command Line

Runs the enrollment or verification flow against a webcam attached to this
machine, using the same state machine, backends and credential store as
the API.

Usage:
    # Required secrets
    export FACEAUTH_MASTER_KEY=$(python scripts/run_face_auth.py generate-key)
    export FACEAUTH_IDP_KEY=...

    # Enroll (press ENTER to capture, then confirm)
    python scripts/run_face_auth.py enroll --user-id usr_abc123

    # Verify a known user (local or managed backend)
    python scripts/run_face_auth.py verify --user-id usr_abc123

    # Sign in without naming the user (managed backend only)
    python scripts/run_face_auth.py verify

    # Status / opt-out
    python scripts/run_face_auth.py status --user-id usr_abc123
    python scripts/run_face_auth.py opt-out --user-id usr_abc123

Controls (during capture):
    - Press ENTER to capture
    - Type 'q' then ENTER to cancel
"""

import argparse
import asyncio
import logging
import platform
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from faceauth.bootstrap import build_components
from faceauth.capture import OpenCVCaptureController
from faceauth.config import get_config
from faceauth.crypto import generate_master_key
from faceauth.flow import FaceAuthFlow, FlowEvent, FlowState

logger = logging.getLogger(__name__)


def print_event(event: FlowEvent) -> None:
    """Console rendering of flow events."""
    if event.type == "state":
        print(f"  [{event.state.value}]")
    elif event.type == "success":
        if event.enrolled is False:
            print("\nFace login was not enabled.")
        elif event.confidence is not None:
            print(f"\nSigned in as {event.user_id} (score {event.confidence:.3f})")
        else:
            print(f"\nFace login enabled for {event.user_id}")
    elif event.type == "failure":
        print(f"\n  {event.error['message']}")
        if event.data.get("fallback_available"):
            print("  Please use your password to sign in.")
    elif event.type == "cancelled":
        print("\nCancelled.")


async def prompt(text: str) -> str:
    return (await asyncio.to_thread(input, text)).strip().lower()


async def drive(flow: FaceAuthFlow) -> int:
    """Capture on ENTER until the flow settles."""
    while flow.state == FlowState.READY:
        answer = await prompt("Press ENTER to capture (q to cancel): ")
        if answer == "q":
            await flow.cancel()
            return 1

        await flow.capture()

        if flow.state == FlowState.AWAITING_CHOICE:
            answer = await prompt("Enable face login? [y/N]: ")
            await flow.choose(answer in ("y", "yes"))

    return 0 if flow.state == FlowState.SUCCESS else 1


async def run(args) -> int:
    config = get_config()
    if args.backend:
        config = {**config, "matching": {**config.get("matching", {}), "backend": args.backend}}

    components = await build_components(config)
    try:
        if args.command == "status":
            status = components.enrollment_status(args.user_id)
            state = "enabled" if status["enabled"] else "not enabled"
            print(f"Face login for {args.user_id} ({status['backend_kind']}): {state}")
            if status["last_used_at"]:
                print(f"Last used: {status['last_used_at']}")
            return 0

        if args.command == "opt-out":
            count = await components.opt_out(args.user_id)
            print(f"Removed {count} enrollment record(s) for {args.user_id}")
            return 0

        flow = components.new_flow(OpenCVCaptureController(), listener=print_event)

        if args.command == "enroll":
            device_info = {"platform": platform.platform(), "client": "cli"}
            await flow.start_enrollment(args.user_id, device_info=device_info)
        else:
            await flow.start_verification(args.user_id)

        try:
            return await drive(flow)
        finally:
            await flow.cancel()
    finally:
        await components.aclose()


def main():
    parser = argparse.ArgumentParser(
        description="Face Authentication - enrollment and verification with a local webcam",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "command", choices=["enroll", "verify", "status", "opt-out", "generate-key"],
        help="Action to run",
    )
    parser.add_argument(
        "--user-id", type=str, default=None,
        help="User to enroll or verify (omit with 'verify' for a collection search)",
    )
    parser.add_argument(
        "--backend", choices=["local", "managed"], default=None,
        help="Override matching.backend from config.yaml",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Log debug output",
    )
    args = parser.parse_args()

    if args.command == "generate-key":
        print(generate_master_key())
        return 0

    if args.command != "verify" and not args.user_id:
        parser.error(f"--user-id is required for '{args.command}'")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    print("=" * 60)
    print(f"Face Authentication - {args.command}")
    print("=" * 60)

    try:
        return asyncio.run(run(args))
    except ValueError as e:
        print(f"Error: {e}")
        return 2
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
