# faceaccess/cli.py
import argparse
import logging
import sys
from pathlib import Path

import cv2

from .config import LOG_LEVEL, MATCH_THRESHOLD, POLL_INTERVAL, REQUIRE_LIVENESS, SERVER_URL, WEBHOOK_URL
from .errors import FaceAccessError
from .face_utils import FaceAnalyzer
from .notifier import RecognitionNotifier
from .photos import PhotoStorage
from .services import enroll_user
from .session import GRANTED, NOT_LIVE, RecognitionSession
from .storage import create_store

logger = logging.getLogger(__name__)

COLORS = {GRANTED: (0, 255, 0), NOT_LIVE: (0, 165, 255)}
DENIED_COLOR = (0, 0, 255)


def draw_overlay(frame, results) -> None:
    for r in results:
        if not r.box:
            continue
        x1, y1, x2, y2 = (int(v) for v in r.box)
        color = COLORS.get(r.status, DENIED_COLOR)
        cv2.rectangle(frame, (x1, y1), (x2, y2), color, 2)
        parts = [f"{r.label} ({r.confidence:.2f})"]
        if r.age is not None:
            parts.append(f"{r.age}y")
        if r.gender:
            parts.append(r.gender)
        cv2.putText(frame, " ".join(parts), (x1, max(y1 - 10, 20)), cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 2)


def cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run("faceaccess.main:app", host=args.host, port=args.port, log_level=LOG_LEVEL.lower())
    return 0


def cmd_enroll(args) -> int:
    store = create_store()
    analyzer = FaceAnalyzer()
    analyzer.load()
    uploads = [(p.name, p.read_bytes()) for p in map(Path, args.photos)]
    try:
        outcome = enroll_user(store, analyzer, PhotoStorage(), args.name, uploads)
    except FaceAccessError as e:
        print(f"Enrollment failed: {e.message}")
        return 1
    finally:
        store.close()
    print(f"Registered {outcome.success_count} photo(s) for {args.name}, {outcome.failure_count} rejected")
    for failure in outcome.failures:
        print(f"  {failure['filename']}: {failure['error']}")
    return 0


def cmd_watch(args) -> int:
    store = create_store()
    analyzer = FaceAnalyzer()
    analyzer.load()
    notifier = RecognitionNotifier(webhook_url=args.webhook, server_url=args.server)
    session = RecognitionSession(
        store,
        analyzer,
        threshold=args.threshold,
        require_liveness=args.require_liveness,
        notifier=notifier,
    )

    cap = cv2.VideoCapture(args.camera)
    if not cap.isOpened():
        store.close()
        raise RuntimeError("Could not open webcam")
    delay = max(int(POLL_INTERVAL * 1000), 1)
    try:
        while True:
            ok, frame = cap.read()
            if not ok:
                break
            try:
                tick = session.tick(frame)
            except (FaceAccessError, cv2.error, ValueError) as e:
                # a bad tick must not stop the loop
                logger.warning(f"Recognition tick failed: {e}")
                continue
            if tick.announcement:
                # stands in for speech output
                print(tick.announcement)
            draw_overlay(frame, tick.results)
            cv2.imshow("FaceAccess", frame)
            key = cv2.waitKey(delay) & 0xFF
            if key == ord("q"):
                break
            if key == ord("r"):
                session.invalidate()
    finally:
        cap.release()
        cv2.destroyAllWindows()
        store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="faceaccess", description="Face registration and recognition")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=3000)
    serve.set_defaults(func=cmd_serve)

    enroll = sub.add_parser("enroll", help="Register photos for a user")
    enroll.add_argument("name")
    enroll.add_argument("photos", nargs="+")
    enroll.set_defaults(func=cmd_enroll)

    watch = sub.add_parser("watch", help="Live recognition from a webcam")
    watch.add_argument("--camera", type=int, default=0)
    watch.add_argument("--threshold", type=float, default=MATCH_THRESHOLD)
    watch.add_argument("--require-liveness", action="store_true", default=REQUIRE_LIVENESS)
    watch.add_argument("--webhook", default=WEBHOOK_URL)
    watch.add_argument("--server", default=SERVER_URL, help="API base URL for /log-recognition")
    watch.set_defaults(func=cmd_watch)
    return parser


def main(argv=None) -> int:
    logging.basicConfig(level=LOG_LEVEL)
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
