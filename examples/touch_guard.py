#!/usr/bin/env python3
"""Touch Guard - Command Line Runner

Trains a two-class face-touch classifier from your webcam and then warns you
(sound + desktop notification) whenever you touch your face.

Usage:
    # Interactive mode with the default camera
    python3 touch_guard.py --model models/mobilenet_v2_feature_vector.tflite

    # Keep the trained dataset across restarts, raw examples instead of centroids
    python3 touch_guard.py --model model.tflite --keep-dataset --raw

Commands (interactive):
    train not      Collect "not touching" examples (hands away from the face)
    train touch    Collect "touching" examples
    run / pause    Start or stop detection
    reset          Forget every example
    threshold X    Alert confidence cutoff (0.50-0.99)
                   (centroid mode votes 1.0 once a class has K examples;
                   the cutoff mostly matters with --raw)
    batches N      Training batch multiplier (1-20)
    mute on|off    Silence the cue (notifications still appear)
    debug on|off   Show debug logging on the console
    cameras        List cameras
    camera N       Switch camera
    status         Show current status
    quit           Exit

Requirements:
    - A webcam
    - A MobileNet feature-vector TFLite model
    - tflite-runtime (or tensorflow), opencv-python, pygame
"""

import os
import sys
import signal
import argparse
import logging

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from touchguard.logging_config import setup_logging, set_debug
from touchguard.classifier import NOT_TOUCH_LABEL, TOUCHED_LABEL
from touchguard.errors import InitializationError
from touchguard.settings import GuardSettings, SettingsManager

TRAIN_TARGETS = {
    'not': NOT_TOUCH_LABEL,
    'touch': TOUCHED_LABEL,
}

STEP_HINTS = {
    'COLLECTING_A': "Step 1: keep your hands away from your face, then 'train not'",
    'COLLECTING_B': "Step 2: touch your face, then 'train touch'",
    'READY': "Step 3: 'run' to start detection",
    'RUNNING': "Detecting... 'pause' to stop",
}


def print_progress(label: str, percent: int):
    print(f"\r  Training {label}: {percent:3d}%", end="", flush=True)
    if percent >= 100:
        print()


def print_status(guard):
    status = guard.get_status()
    print(f"  State:     {status['state']} (step {status['step']})")
    print(f"  Examples:  not_touch={status['counts'][NOT_TOUCH_LABEL]}  "
          f"touched={status['counts'][TOUCHED_LABEL]}  ({status['mode']})")
    print(f"  Threshold: {status['threshold']:.2f}   "
          f"Batch: {status['training_target']} samples   "
          f"Muted: {'yes' if status['muted'] else 'no'}")
    print(f"  Camera:    {status['camera']}   Backend: {status['backend']}   FPS: {status['fps']}")
    if status['error']:
        print(f"  Error:     {status['error']}")
    hint = STEP_HINTS.get(status['state'])
    if hint:
        print(f"  {hint}")


def build_guard(args):
    """Build the Touch Guard with real camera, model and sound"""
    from touchguard.alerts import DesktopNotifier, NullAlertSink, PygameAlertSink
    from touchguard.camera import VideoSource
    from touchguard.features import MobileNetEmbedder
    from touchguard.guard import TouchGuard
    from touchguard.persistence import SQLiteKeyValueStore

    defaults = GuardSettings(
        threshold=args.threshold,
        batch_multiplier=args.batches,
        compress_to_centroid=not args.raw,
        discard_on_startup=not args.keep_dataset,
        muted=args.mute,
    )
    settings_manager = SettingsManager(args.settings, defaults=defaults)
    settings = settings_manager.get()

    # Command-line flags win over the settings file for record kind and restore
    settings.compress_to_centroid = not args.raw
    settings.discard_on_startup = not args.keep_dataset
    if args.mute:
        settings.muted = True

    if args.sound:
        alert_sink = PygameAlertSink(
            args.sound,
            notifier=DesktopNotifier(cooldown=settings.notify_cooldown)
        )
    else:
        alert_sink = NullAlertSink()

    return TouchGuard(
        extractor=MobileNetEmbedder(args.model),
        video_source=VideoSource(),
        alert_sink=alert_sink,
        kv_store=SQLiteKeyValueStore(args.db),
        settings_manager=settings_manager,
        camera_index=args.camera,
        on_progress=print_progress,
    )


def handle_command(guard, line: str) -> bool:
    """Execute one interactive command

    Returns:
        False when the user asked to quit
    """
    parts = line.split()
    command, rest = parts[0].lower(), parts[1:]

    if command in ('quit', 'exit', 'q'):
        return False

    if command == 'train':
        label = TRAIN_TARGETS.get(rest[0].lower()) if rest else None
        if label is None:
            print("  Usage: train not | train touch")
        elif not guard.train(label):
            print("  Training not possible right now")
            print_status(guard)
        else:
            print_status(guard)

    elif command == 'run':
        if guard.run():
            print("  Detection running")
        else:
            print("  Cannot run yet")
            print_status(guard)

    elif command == 'pause':
        guard.pause()
        print("  Detection paused")

    elif command == 'reset':
        print("  Dataset cleared" if guard.reset() else "  Reset rejected while training")

    elif command == 'threshold' and rest:
        if guard.set_threshold(float(rest[0])):
            print(f"  Threshold: {guard.settings.threshold:.2f}")
        else:
            print("  Threshold cannot change while training")

    elif command == 'batches' and rest:
        if guard.set_batch_multiplier(int(rest[0])):
            print(f"  Batch size: {guard.settings.training_target} samples")
        else:
            print("  Batch size cannot change while training or running")

    elif command == 'mute' and rest:
        guard.set_muted(rest[0].lower() in ('on', 'yes', 'true', '1'))
        print(f"  Muted: {'yes' if guard.settings.muted else 'no'}")

    elif command == 'debug' and rest:
        enabled = rest[0].lower() in ('on', 'yes', 'true', '1')
        set_debug(enabled)
        print(f"  Debug logging: {'on' if enabled else 'off'}")

    elif command == 'cameras':
        print(f"  Cameras: {guard.list_cameras()}")

    elif command == 'camera' and rest:
        if guard.switch_camera(int(rest[0])):
            print(f"  Using camera {rest[0]}")
        else:
            print(f"  {guard.error}")

    elif command == 'status':
        print_status(guard)

    else:
        print("  Commands: train not|touch, run, pause, reset, threshold X, "
              "batches N, mute on|off, debug on|off, cameras, camera N, status, quit")

    return True


def run_interactive(args):
    guard = build_guard(args)

    def signal_handler(sig, frame):
        print("\nShutting down...")
        guard.stop()
        sys.exit(0)

    signal.signal(signal.SIGTERM, signal_handler)

    try:
        guard.start()
    except InitializationError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    print("=== Touch Guard ===\n")
    print_status(guard)
    print()

    try:
        while True:
            try:
                line = input("guard> ").strip()
            except EOFError:
                break
            if not line:
                continue
            try:
                if not handle_command(guard, line):
                    break
            except ValueError as e:
                print(f"  Invalid value: {e}")
    except KeyboardInterrupt:
        print()
    finally:
        guard.stop()

    print("Goodbye!")


def main():
    parser = argparse.ArgumentParser(
        description='Touch Guard - stop touching your face',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Default camera, audible cue
    python3 touch_guard.py --model model.tflite --sound assets/take_your_hand_off.mp3

    # Second camera, stricter threshold, bigger training batches
    python3 touch_guard.py --model model.tflite --camera 1 --threshold 0.9 --batches 4

    # Keep the trained dataset between runs
    python3 touch_guard.py --model model.tflite --keep-dataset --db ~/.touchguard/dataset.db
"""
    )

    parser.add_argument('--model', required=True,
                       help='Path to a MobileNet feature-vector TFLite model')
    parser.add_argument('--sound', default=None,
                       help='Alert cue file (MP3/WAV); log-only alerts if omitted')
    parser.add_argument('--camera', type=int, default=0,
                       help='Camera index to open (default: 0)')
    parser.add_argument('--db', default=None,
                       help='SQLite file for the dataset (default: next to the package)')
    parser.add_argument('--settings', default=None,
                       help='JSON settings file (remembers mute, threshold, batches)')
    parser.add_argument('--keep-dataset', action='store_true',
                       help='Restore the saved dataset instead of discarding it on startup')
    parser.add_argument('--raw', action='store_true',
                       help='Keep every example instead of one running centroid per class')
    parser.add_argument('--threshold', type=float, default=0.8,
                       help='Touched confidence needed to alert, 0.50-0.99 (default: 0.8); '
                            'mostly matters with --raw')
    parser.add_argument('--batches', type=int, default=1,
                       help='Training batch multiplier, 1-20 (default: 1 = 50 samples)')
    parser.add_argument('--mute', action='store_true',
                       help='Start with the audible cue muted')
    parser.add_argument('--debug', action='store_true',
                       help='Enable debug logging')
    parser.add_argument('--log-file', default=None,
                       help='Also write logs to this file')

    args = parser.parse_args()

    # Setup logging (before anything else)
    log_level = logging.DEBUG if args.debug else logging.INFO
    setup_logging(level=log_level, log_file=args.log_file)

    if not os.path.exists(args.model):
        parser.error(f"model not found: {args.model}")
    if args.sound and not os.path.exists(args.sound):
        parser.error(f"sound file not found: {args.sound}")

    run_interactive(args)


if __name__ == '__main__':
    main()
