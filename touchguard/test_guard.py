#!/usr/bin/env python3
"""Automated test script for Touch Guard

Tests the classifier, state machine, training, detection loop and dataset
persistence without a camera, model or speakers.
Run with: python3 test_guard.py  (or collect with pytest)
"""

import json
import logging
import os
import sys
import tempfile
import threading
import time

import numpy as np

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from touchguard.alerts import AlertSink, DesktopNotifier
from touchguard.classifier import (
    ClassifierStore, Prediction, NOT_TOUCH_LABEL, TOUCHED_LABEL
)
from touchguard.features import FeatureExtractor, FrameEmbedder
from touchguard.guard import TouchGuard
from touchguard.errors import InitializationError, SourceSwitchError
from touchguard.inference import InferenceLoop, FpsMeter
from touchguard.logging_config import setup_logging, set_debug
from touchguard.persistence import (
    DatasetPersistence, MemoryKeyValueStore, SQLiteKeyValueStore, DATASET_KEY
)
from touchguard.settings import GuardSettings, SettingsManager
from touchguard.state import GuardSession, RunState, StateEvent, StateMachine, TrainingSession


def print_header(title):
    print(f"\n{'='*60}")
    print(f"  {title}")
    print(f"{'='*60}\n")


def print_test(name, passed, details=""):
    status = "✅ PASS" if passed else "❌ FAIL"
    print(f"{status}: {name}")
    if details:
        print(f"       {details}")
    assert passed, f"{name}: {details}"


# ==================== TEST DOUBLES ====================

class FakeVideoSource:
    """Serves whatever vector is in .frame as the current frame"""

    def __init__(self, frame=None, broken=()):
        self.frame = np.zeros(4, dtype=np.float32) if frame is None else frame
        self.broken = set(broken)
        self.index = None
        self.released = False

    def open(self, index=0):
        if index in self.broken:
            raise SourceSwitchError(f"Camera {index} could not be opened")
        self.index = index

    def switch(self, index):
        self.open(index)

    def get_frame(self):
        return self.frame

    def release(self):
        self.released = True


class FakeExtractor(FeatureExtractor):
    """The frame already is the embedding"""

    backend = "fake"

    def __init__(self, fail_after=None, delay=0.0, on_extract=None):
        self.calls = 0
        self.fail_after = fail_after
        self.delay = delay
        self.on_extract = on_extract

    def extract(self, frame):
        self.calls += 1
        if self.fail_after is not None and self.calls > self.fail_after:
            raise RuntimeError("video source lost")
        if self.delay:
            time.sleep(self.delay)
        if self.on_extract:
            self.on_extract()
        return np.asarray(frame, dtype=np.float32)


class BrokenExtractor(FakeExtractor):
    def load(self):
        raise FileNotFoundError("model missing")


class RecordingAlertSink(AlertSink):
    def __init__(self):
        super().__init__()
        self.cues = 0
        self.stops = 0
        self.notifications = []

    def play_cue(self):
        if not self.muted:
            self.cues += 1

    def stop_cue(self):
        self.stops += 1

    def notify(self, title, body):
        self.notifications.append((title, body))

    def finish_cue(self):
        self._fire_cue_complete()


class ScriptedStore:
    """Stands in for the classifier with a fixed list of predictions"""

    def __init__(self, predictions, total=10):
        self.predictions = list(predictions)
        self.total = total
        self.calls = 0

    def total_examples(self):
        return self.total

    def classify(self, embedding):
        prediction = self.predictions[min(self.calls, len(self.predictions) - 1)]
        self.calls += 1
        return prediction


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def touched(confidence):
    return Prediction(label=TOUCHED_LABEL,
                      confidences={TOUCHED_LABEL: confidence, NOT_TOUCH_LABEL: 1 - confidence})


def ready_session():
    session = GuardSession()
    session.machine.apply(StateEvent.TRAINED_A)
    session.machine.apply(StateEvent.TRAINED_B)
    session.display_counts = {NOT_TOUCH_LABEL: 50, TOUCHED_LABEL: 50}
    return session


def make_loop(store, frames, settings=None, sink=None, clock=None, extractor=None):
    """Build a READY loop that pauses itself after `frames` iterations"""
    session = ready_session()
    settings = settings or GuardSettings()
    sink = sink or RecordingAlertSink()
    clock = clock or FakeClock()
    source = FakeVideoSource()
    embedder = FrameEmbedder(extractor or FakeExtractor(), source.get_frame)

    sleeps = []
    touched_flags = []
    holder = {}

    def sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds)
        if len(sleeps) >= frames:
            holder['loop'].pause()

    loop = InferenceLoop(session, store, embedder, sink, settings,
                         sleep=sleep, clock=clock,
                         on_frame=lambda p: touched_flags.append(session.touched))
    holder['loop'] = loop
    return loop, session, sink, sleeps, touched_flags


def make_guard(kv=None, **settings):
    defaults = dict(unit_size=50, batch_multiplier=1, sample_pause_ms=0)
    defaults.update(settings)
    manager = SettingsManager(defaults=GuardSettings(**defaults))
    source = FakeVideoSource()
    guard = TouchGuard(
        extractor=FakeExtractor(),
        video_source=source,
        alert_sink=RecordingAlertSink(),
        kv_store=kv if kv is not None else MemoryKeyValueStore(),
        settings_manager=manager,
        sleep=lambda s: None,
    )
    return guard, source


def train_both(guard, source):
    source.frame = np.array([0.0, 0.0, 0.0, 0.0], dtype=np.float32)
    ok_a = guard.train(NOT_TOUCH_LABEL)
    source.frame = np.array([10.0, 10.0, 10.0, 10.0], dtype=np.float32)
    ok_b = guard.train(TOUCHED_LABEL)
    return ok_a, ok_b


# ==================== TESTS ====================

def test_classifier_store():
    """Test raw and centroid records, KNN voting"""
    print_header("Testing Classifier Store")

    # Test 1: Raw counts
    raw = ClassifierStore(compress_to_centroid=False, k=3)
    for i in range(7):
        raw.add_example([0.0, float(i) * 0.01], NOT_TOUCH_LABEL)
    counts = raw.get_class_counts()
    print_test("Raw counts", counts == {NOT_TOUCH_LABEL: 7, TOUCHED_LABEL: 0}, f"Counts: {counts}")

    # Test 2: Dimension fixed by the first example
    try:
        raw.add_example([1.0, 2.0, 3.0], TOUCHED_LABEL)
        rejected = False
    except ValueError:
        rejected = True
    print_test("Reject wrong dimension", rejected and raw.get_class_counts()[TOUCHED_LABEL] == 0)

    # Test 3: Nearest-neighbor vote
    for i in range(5):
        raw.add_example([10.0, float(i) * 0.01], TOUCHED_LABEL)
    result = raw.classify([9.0, 0.0])
    print_test("Classify touched", result.label == TOUCHED_LABEL and result.confidence == 1.0,
               f"{result.label} {result.confidences}")
    total = sum(result.confidences.values())
    print_test("Confidences sum to 1", abs(total - 1.0) < 1e-9, f"Sum: {total}")

    # Test 4: Mixed neighborhood gives fractional confidence
    mixed = ClassifierStore(compress_to_centroid=False, k=10)
    for i in range(4):
        mixed.add_example([0.0, float(i)], NOT_TOUCH_LABEL)
    for i in range(6):
        mixed.add_example([1.0, float(i)], TOUCHED_LABEL)
    result = mixed.classify([0.5, 0.0])
    print_test("Vote fractions", result.label == TOUCHED_LABEL
               and abs(result.confidences[TOUCHED_LABEL] - 0.6) < 1e-9, f"{result.confidences}")

    # Test 5: Equal distance goes to the first-seen representative
    tie = ClassifierStore(compress_to_centroid=False, k=1)
    tie.add_example([1.0, 0.0], NOT_TOUCH_LABEL)
    tie.add_example([-1.0, 0.0], TOUCHED_LABEL)
    result = tie.classify([0.0, 0.0])
    print_test("Tie to first seen", result.label == NOT_TOUCH_LABEL, f"Label: {result.label}")

    # Test 6: Running centroid
    centroid = ClassifierStore(compress_to_centroid=True, k=4)
    centroid.add_example([0.0, 0.0], NOT_TOUCH_LABEL)
    centroid.add_example([2.0, 4.0], NOT_TOUCH_LABEL)
    centroid.add_example([4.0, 8.0], NOT_TOUCH_LABEL)
    record = centroid.get_record(NOT_TOUCH_LABEL)
    print_test("Centroid mean", np.allclose(record.mean, [2.0, 4.0]) and record.count == 3,
               f"Mean: {record.mean}, count: {record.count}")

    # Test 7: Centroid weighs as many votes as examples it folds
    for _ in range(3):
        centroid.add_example([20.0, 20.0], TOUCHED_LABEL)
    result = centroid.classify([19.0, 19.0])
    print_test("Centroid classify", result.label == TOUCHED_LABEL
               and abs(result.confidences[TOUCHED_LABEL] - 0.75) < 1e-9, f"{result.confidences}")
    result = centroid.classify([2.0, 4.0])
    print_test("Centroid weights", result.label == NOT_TOUCH_LABEL
               and abs(result.confidences[NOT_TOUCH_LABEL] - 0.75) < 1e-9, f"{result.confidences}")

    # Test 8: Empty store refuses to classify
    empty = ClassifierStore()
    try:
        empty.classify([0.0, 0.0])
        refused = False
    except RuntimeError:
        refused = True
    print_test("Empty store refuses", refused)

    # Test 9: clear_all is idempotent
    raw.clear_all()
    once = raw.export_snapshot()
    raw.clear_all()
    twice = raw.export_snapshot()
    print_test("clear_all idempotent", once == twice and raw.total_examples() == 0,
               f"Counts: {raw.get_class_counts()}")


def test_snapshots():
    """Test export/import round trips"""
    print_header("Testing Snapshots")

    # Test 1: Raw round trip keeps counts and predictions
    raw = ClassifierStore(compress_to_centroid=False, k=3)
    rng = np.random.default_rng(7)
    for _ in range(20):
        raw.add_example(rng.normal(0.0, 1.0, 8), NOT_TOUCH_LABEL)
        raw.add_example(rng.normal(3.0, 1.0, 8), TOUCHED_LABEL)
    query = rng.normal(1.5, 1.0, 8)
    before = raw.classify(query)

    snapshot = json.loads(json.dumps(raw.export_snapshot()))
    copy = ClassifierStore(compress_to_centroid=False, k=3)
    copy.import_snapshot(snapshot)
    after = copy.classify(query)
    print_test("Raw counts survive", copy.get_class_counts() == raw.get_class_counts(),
               f"Counts: {copy.get_class_counts()}")
    print_test("Raw prediction survives", before == after, f"{before.label} -> {after.label}")

    # Test 2: Centroid round trip keeps mean within tolerance
    centroid = ClassifierStore(compress_to_centroid=True)
    for _ in range(30):
        centroid.add_example(rng.normal(0.0, 1.0, 8), NOT_TOUCH_LABEL)
    snapshot = json.loads(json.dumps(centroid.export_snapshot()))
    copy = ClassifierStore(compress_to_centroid=True)
    copy.import_snapshot(snapshot)
    same_mean = np.allclose(copy.get_record(NOT_TOUCH_LABEL).mean,
                            centroid.get_record(NOT_TOUCH_LABEL).mean, atol=1e-6)
    print_test("Centroid mean survives", same_mean)
    print_test("Centroid counts survive", copy.get_class_counts() == centroid.get_class_counts(),
               f"Counts: {copy.get_class_counts()}")

    # Test 3: Both labels always present
    entry = snapshot['classes'][TOUCHED_LABEL]
    print_test("Empty placeholder", entry['centroid'] is True and entry['data'] == []
               and entry['shape'] == [0, 0] and entry['count'] == 0, f"Entry: {entry}")
    print_test("Snapshot version", snapshot['version'] == 2)

    # Test 4: Centroid entry into a raw store becomes one vector
    raw_copy = ClassifierStore(compress_to_centroid=False)
    raw_copy.import_snapshot(snapshot)
    print_test("Centroid into raw store", raw_copy.get_class_counts()[NOT_TOUCH_LABEL] == 1)


def test_state_machine():
    """Test operating state transitions"""
    print_header("Testing State Machine")

    sm = StateMachine()
    print_test("Initial state", sm.state == RunState.COLLECTING_A)
    print_test("B not trainable first", not sm.can_train(TOUCHED_LABEL))
    print_test("Run not allowed", not sm.apply(StateEvent.RUN) and sm.state == RunState.COLLECTING_A)

    sm.apply(StateEvent.TRAINED_A)
    print_test("A -> B", sm.state == RunState.COLLECTING_B and sm.can_train(TOUCHED_LABEL))
    print_test("A not trainable in B", not sm.can_train(NOT_TOUCH_LABEL))

    sm.apply(StateEvent.TRAINED_B)
    print_test("B -> Ready", sm.state == RunState.READY and sm.can_run())

    sm.apply(StateEvent.RUN)
    print_test("Ready -> Running", sm.is_running)

    sm.apply(StateEvent.STOP)
    print_test("Running -> Ready", sm.state == RunState.READY)

    sm.apply(StateEvent.RESET)
    print_test("Reset -> A", sm.state == RunState.COLLECTING_A)

    sm.apply(StateEvent.RESTORED)
    print_test("Restore -> Ready", sm.state == RunState.READY)


def test_settings():
    """Test clamping and persistence of settings"""
    print_header("Testing Settings")

    s = GuardSettings(threshold=1.5, batch_multiplier=40)
    print_test("Clamp high", s.threshold == 0.99 and s.batch_multiplier == 20,
               f"{s.threshold}, {s.batch_multiplier}")

    s = GuardSettings(threshold=0.1, batch_multiplier=0)
    print_test("Clamp low", s.threshold == 0.5 and s.batch_multiplier == 1,
               f"{s.threshold}, {s.batch_multiplier}")

    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "settings.json")
        sm = SettingsManager(path)
        ok, msg = sm.update("muted", True)
        print_test("Update muted", ok, msg)

        ok, msg = sm.update("volume_knob", 11)
        print_test("Reject unknown setting", not ok, msg)

        ok, msg = sm.update("k", 3)
        print_test("Reject K change", not ok and sm.get().k == 10, msg)
        ok, msg = sm.update("compress_to_centroid", False)
        print_test("Reject record kind change", not ok and sm.get().compress_to_centroid is True, msg)

        reloaded = SettingsManager(path)
        print_test("Muted persists", reloaded.get().muted is True)
        print_test("Build-time values not saved", reloaded.get().k == 10
                   and reloaded.get().compress_to_centroid is True)


def test_training_progress():
    """Progress percentages round halves up"""
    print_header("Testing Training Progress")

    batch = TrainingSession(label=NOT_TOUCH_LABEL, target=200)
    percents = []
    for _ in range(5):
        batch.completed += 1
        percents.append(batch.percent)
    print_test("Halves round up", percents == [1, 1, 2, 2, 3], f"{percents}")

    batch.completed = 200
    print_test("Complete", batch.percent == 100)
    print_test("Empty target", TrainingSession(label=TOUCHED_LABEL, target=0).percent == 100)


def test_training():
    """Test the training protocol end to end"""
    print_header("Testing Training")

    guard, source = make_guard()
    guard.start()

    # Test 1: B before A is rejected without side effects
    rejected = not guard.train(TOUCHED_LABEL)
    print_test("Reject B first", rejected and guard.store.total_examples() == 0
               and guard.session.state == RunState.COLLECTING_A)

    # Test 2: Both batches
    ok_a, ok_b = train_both(guard, source)
    counts = guard.store.get_class_counts()
    print_test("Batches complete", ok_a and ok_b, f"Counts: {counts}")
    print_test("50 each", counts == {NOT_TOUCH_LABEL: 50, TOUCHED_LABEL: 50})
    print_test("State Ready", guard.session.state == RunState.READY)
    print_test("allow_run", guard.allow_run)
    print_test("Progress 100%", guard.session.progress == {NOT_TOUCH_LABEL: 100, TOUCHED_LABEL: 100})

    # Test 3: Snapshot written
    saved = json.loads(guard.kv.get(DATASET_KEY))
    print_test("Snapshot saved", saved['classes'][TOUCHED_LABEL]['display_count'] == 50)

    # Test 4: Ready -> run, then train is rejected
    guard.loop._sleep = lambda s: time.sleep(0.005)
    started = guard.run()
    rejected = not guard.train(NOT_TOUCH_LABEL)
    guard.pause()
    print_test("Train rejected while running", started and rejected)
    guard.stop()


def test_training_allow_run_after_both():
    """allow_run flips only after the second batch"""
    print_header("Testing allow_run")

    guard, source = make_guard()
    guard.start()
    guard.train(NOT_TOUCH_LABEL)
    print_test("Not yet", not guard.allow_run and not guard.run())
    source.frame = np.ones(4, dtype=np.float32)
    guard.train(TOUCHED_LABEL)
    print_test("Now allowed", guard.allow_run)


def test_training_failure():
    """A failing sample aborts the batch but keeps partial data"""
    print_header("Testing Training Failure")

    guard, source = make_guard()
    guard.extractor.fail_after = 10
    guard.start()

    ok = guard.train(NOT_TOUCH_LABEL)
    print_test("Batch aborted", not ok, guard.session.last_error)
    print_test("Partial kept", guard.store.get_class_counts()[NOT_TOUCH_LABEL] == 10)
    print_test("Display counts match", guard.session.display_counts[NOT_TOUCH_LABEL] == 10)
    print_test("Lock released", not guard.session.busy)
    print_test("State unchanged", guard.session.state == RunState.COLLECTING_A)
    print_test("No snapshot", guard.kv.get(DATASET_KEY) is None)

    guard.extractor.fail_after = None
    print_test("Can train again", guard.train(NOT_TOUCH_LABEL))


def test_single_flight():
    """A second training call during a batch is rejected"""
    print_header("Testing Single Flight")

    gate = threading.Event()
    release = threading.Event()

    def hold():
        gate.set()
        release.wait(2.0)

    guard, source = make_guard(unit_size=2)
    guard.extractor.on_extract = hold
    guard.start()

    results = []
    worker = threading.Thread(target=lambda: results.append(guard.train(NOT_TOUCH_LABEL)))
    worker.start()
    gate.wait(2.0)

    busy = guard.session.busy
    second = guard.train(NOT_TOUCH_LABEL)
    threshold_locked = not guard.set_threshold(0.9)
    release.set()
    worker.join(5.0)

    print_test("Busy during batch", busy)
    print_test("Second call rejected", second is False)
    print_test("Threshold locked mid-training", threshold_locked)
    print_test("First call completes", results == [True])


def test_alert_debounce():
    """Five touched frames fire one cue and five notifications"""
    print_header("Testing Alert Debounce")

    store = ScriptedStore([touched(0.95)])
    loop, session, sink, _, flags = make_loop(store, frames=5)
    loop.run(blocking=True)

    print_test("One cue", sink.cues == 1, f"Cues: {sink.cues}")
    print_test("Touched on all 5", flags == [True] * 5, f"Flags: {flags}")
    print_test("Notify every frame", len(sink.notifications) == 5)
    print_test("Back to Ready", session.state == RunState.READY)

    # Cue completion re-arms the latch
    store = ScriptedStore([touched(0.95)])
    loop, session, sink, sleeps, _ = make_loop(store, frames=4)
    original_sleep = loop._sleep

    def sleep_and_finish(seconds):
        if len(sleeps) == 1:
            sink.finish_cue()
        original_sleep(seconds)

    loop._sleep = sleep_and_finish
    loop.run(blocking=True)
    print_test("Re-armed after cue end", sink.cues == 2, f"Cues: {sink.cues}")


def test_threshold_boundary():
    """0.79 stays quiet, 0.81 alerts at threshold 0.8"""
    print_header("Testing Threshold")

    loop, session, sink, _, flags = make_loop(ScriptedStore([touched(0.79)]), frames=3)
    loop.run(blocking=True)
    print_test("0.79 quiet", sink.cues == 0 and not sink.notifications and flags == [False] * 3)

    loop, session, sink, _, flags = make_loop(ScriptedStore([touched(0.81)]), frames=3)
    loop.run(blocking=True)
    print_test("0.81 alerts", sink.cues == 1 and flags == [True] * 3)

    settings = GuardSettings(muted=True)
    loop, session, sink, _, flags = make_loop(ScriptedStore([touched(0.95)]), frames=3, settings=settings)
    loop.run(blocking=True)
    print_test("Muted: no cue, still notifies", sink.cues == 0 and len(sink.notifications) == 3)


def test_loop_pacing_and_fps():
    """Sleep fills the rest of the cycle; FPS published once per second"""
    print_header("Testing Loop Pacing")

    clock = FakeClock()
    extractor = FakeExtractor(on_extract=lambda: clock.advance(0.05))
    loop, session, sink, sleeps, _ = make_loop(
        ScriptedStore([touched(0.1)]), frames=10, clock=clock, extractor=extractor
    )
    loop.run(blocking=True)
    print_test("Adaptive delay", all(abs(s - 0.11) < 1e-6 for s in sleeps), f"Sleeps: {sleeps[:3]}")
    # 0.16s cycles starting at 0.05s cross the one-second window on frame 7
    print_test("FPS published", session.fps == 7, f"FPS: {session.fps}")

    meter = FpsMeter()
    meter.reset(0.0)
    published = [meter.tick(t * 0.25) for t in range(1, 5)]
    print_test("FpsMeter", published == [None, None, None, 4], f"{published}")


def test_loop_guards():
    """Empty classifier and extractor failures stop the loop"""
    print_header("Testing Loop Guards")

    # Test 1: Classifier emptied -> stop before classify
    store = ScriptedStore([touched(0.95)], total=0)
    loop, session, sink, _, _ = make_loop(store, frames=3)
    started = loop.run(blocking=True)
    print_test("Emptied store never classified", started and store.calls == 0)
    print_test("Emptied -> Ready", session.state == RunState.READY and not session.running)

    # Test 2: Extractor failure aborts
    loop, session, sink, _, _ = make_loop(ScriptedStore([touched(0.95)]), frames=10,
                                          extractor=FakeExtractor(fail_after=2))
    loop.run(blocking=True)
    print_test("Abort on failure", session.state == RunState.READY and not session.running,
               session.last_error)
    print_test("Error reported", "video source lost" in (session.last_error or ""))

    # Test 3: Frame timeout aborts
    settings = GuardSettings(frame_timeout=0.05)
    loop, session, sink, _, _ = make_loop(ScriptedStore([touched(0.95)]), frames=10,
                                          settings=settings, extractor=FakeExtractor(delay=0.5))
    loop.run(blocking=True)
    print_test("Timeout aborts", session.state == RunState.READY
               and "longer than" in (session.last_error or ""), session.last_error)

    # Test 4: Run needs both classes
    session = GuardSession()
    loop = InferenceLoop(session, ClassifierStore(), FrameEmbedder(FakeExtractor(), lambda: None),
                         RecordingAlertSink(), GuardSettings())
    print_test("Run rejected without data", not loop.run(blocking=True))


def test_loop_alert_failures():
    """Alert sink and frame callback errors end the loop in READY"""
    print_header("Testing Alert Failures")

    class NoDaemonSink(RecordingAlertSink):
        def notify(self, title, body):
            raise RuntimeError("notification daemon gone")

    loop, session, sink, _, _ = make_loop(ScriptedStore([touched(0.95)]), frames=5,
                                          sink=NoDaemonSink())
    loop.run(blocking=True)
    print_test("Notify failure stops loop", session.state == RunState.READY and not session.running,
               session.last_error)
    print_test("Notify failure reported", "notification daemon gone" in (session.last_error or ""))
    print_test("Can run again", loop.run(blocking=True) and session.state == RunState.READY)

    def broken_callback(prediction):
        raise ValueError("display closed")

    loop, session, sink, _, _ = make_loop(ScriptedStore([touched(0.1)]), frames=5)
    loop.on_frame = broken_callback
    loop.run(blocking=True)
    print_test("Callback failure stops loop", session.state == RunState.READY
               and "display closed" in (session.last_error or ""), session.last_error)


def test_slow_frame_on_pause():
    """A loop thread stuck in extraction never runs next to a new one"""
    print_header("Testing Slow Frame On Pause")

    guard, source = make_guard()
    guard.start()
    train_both(guard, source)

    guard.extractor.delay = 0.3
    guard.loop._sleep = lambda s: time.sleep(0.005)
    print_test("Run", guard.run())
    time.sleep(0.05)

    guard.loop.pause(timeout=0.05)
    stuck = guard.loop.is_alive
    second = guard.run()
    threads = [t for t in threading.enumerate() if t.name == "touchguard-inference"]
    print_test("Old thread still in extraction", stuck)
    print_test("Second run refused", second is False and guard.session.state == RunState.READY)
    print_test("One loop thread", len(threads) <= 1, f"Threads: {len(threads)}")

    guard.loop._thread.join(2.0)
    print_test("Old thread exits", not guard.loop.is_alive)
    print_test("Stale frame not acted on", guard.alert_sink.notifications == []
               and guard.session.last_error is None)

    guard.extractor.delay = 0.0
    print_test("Run after exit", guard.run())
    guard.pause()
    print_test("Paused", not guard.loop.is_alive and guard.session.state == RunState.READY)
    guard.stop()


def test_pause_and_reset():
    """pause keeps data, reset clears everything"""
    print_header("Testing Pause / Reset")

    guard, source = make_guard()
    guard.start()
    train_both(guard, source)

    guard.loop._sleep = lambda s: time.sleep(0.005)
    guard.run()
    time.sleep(0.05)
    guard.pause()
    print_test("Pause -> Ready", guard.session.state == RunState.READY and not guard.loop.is_alive)
    print_test("Latch re-armed", guard.session.may_alert and not guard.session.touched)
    print_test("Data kept", guard.store.total_examples() == 100)

    guard.run()
    time.sleep(0.05)
    print_test("Reset accepted", guard.reset())
    print_test("Reset -> A", guard.session.state == RunState.COLLECTING_A)
    print_test("Store cleared", guard.store.total_examples() == 0)
    print_test("Counts zeroed", guard.get_status()['counts'] == {NOT_TOUCH_LABEL: 0, TOUCHED_LABEL: 0})
    print_test("Snapshot deleted", guard.kv.get(DATASET_KEY) is None)


def test_persistence_restore():
    """Restore on restart unless discard_on_startup is set"""
    print_header("Testing Persistence")

    with tempfile.TemporaryDirectory() as tmp:
        db = os.path.join(tmp, "guard.db")

        # Test 1: Keep dataset across restarts (centroid mode)
        guard, source = make_guard(kv=SQLiteKeyValueStore(db), discard_on_startup=False)
        guard.start()
        train_both(guard, source)
        guard.stop()

        guard, source = make_guard(kv=SQLiteKeyValueStore(db), discard_on_startup=False)
        guard.start()
        print_test("Counts restored", guard.store.get_class_counts() == {NOT_TOUCH_LABEL: 50, TOUCHED_LABEL: 50},
                   f"{guard.store.get_class_counts()}")
        print_test("Restored -> Ready", guard.session.state == RunState.READY)
        source.frame = np.full(4, 9.0, dtype=np.float32)
        result = guard.store.classify(source.frame)
        print_test("Restored classifies", result.label == TOUCHED_LABEL and result.confidence == 1.0)
        guard.stop()

        # Test 2: Discard on startup
        guard, source = make_guard(kv=SQLiteKeyValueStore(db), discard_on_startup=True)
        guard.start()
        print_test("Discarded", guard.store.total_examples() == 0
                   and guard.session.state == RunState.COLLECTING_A)
        print_test("Snapshot deleted", guard.kv.get(DATASET_KEY) is None)
        guard.stop()


def test_persistence_formats():
    """Legacy migration, bad data and failing stores"""
    print_header("Testing Snapshot Formats")

    # Test 1: Version 1 layout migrates
    kv = MemoryKeyValueStore()
    kv.set(DATASET_KEY, json.dumps({
        NOT_TOUCH_LABEL: {'data': [0.0, 0.0], 'shape': [2], 'centroid': True, 'n': 50},
        TOUCHED_LABEL: {'data': [1.0, 1.0, 3.0, 3.0], 'shape': [2, 2], 'centroid': False, 'n': 2},
    }))
    store = ClassifierStore(compress_to_centroid=True)
    result = DatasetPersistence(store, kv).load()
    print_test("Legacy restored", result.restored and result.both_classes, f"{result.display_counts}")
    print_test("Legacy centroid count", store.get_class_counts()[NOT_TOUCH_LABEL] == 50)
    print_test("Legacy raw folded", np.allclose(store.get_record(TOUCHED_LABEL).mean, [2.0, 2.0]))

    # Test 2: Unknown version is ignored
    kv.set(DATASET_KEY, json.dumps({'version': 99, 'classes': {}}))
    store = ClassifierStore()
    result = DatasetPersistence(store, kv).load()
    print_test("Unknown version ignored", not result.restored and store.total_examples() == 0)

    # Test 3: Garbage is ignored
    kv.set(DATASET_KEY, "{not json")
    result = DatasetPersistence(ClassifierStore(), kv).load()
    print_test("Garbage ignored", not result.restored)

    # Test 4: Store failures never propagate
    class FailingStore(MemoryKeyValueStore):
        def get(self, key):
            raise OSError("disk gone")

        def set(self, key, value):
            raise OSError("disk gone")

        def delete(self, key):
            raise OSError("disk gone")

    persistence = DatasetPersistence(ClassifierStore(), FailingStore())
    print_test("Save failure swallowed", persistence.save({}) is False)
    print_test("Load failure swallowed", not persistence.load().restored)
    print_test("Delete failure swallowed", persistence.delete() is False)

    # Test 5: A version 2 entry that is not an object is ignored
    kv = MemoryKeyValueStore()
    kv.set(DATASET_KEY, json.dumps({'version': 2, 'classes': {TOUCHED_LABEL: [1.0, 2.0]}}))
    store = ClassifierStore()
    result = DatasetPersistence(store, kv).load()
    print_test("Malformed entry ignored", not result.restored and store.total_examples() == 0)

    guard, _ = make_guard(kv=kv, discard_on_startup=False)
    try:
        guard.start()
        started = True
    except Exception as e:
        started = False
        print(f"       start() raised {e!r}")
    print_test("Startup survives malformed entry", started
               and guard.session.state == RunState.COLLECTING_A
               and guard.get_status()['counts'] == {NOT_TOUCH_LABEL: 0, TOUCHED_LABEL: 0})

    # Test 6: Raw mode restores every vector
    kv = MemoryKeyValueStore()
    store = ClassifierStore(compress_to_centroid=False)
    for i in range(3):
        store.add_example([float(i), 0.0], NOT_TOUCH_LABEL)
    DatasetPersistence(store, kv).save({NOT_TOUCH_LABEL: 3})
    restored = ClassifierStore(compress_to_centroid=False)
    result = DatasetPersistence(restored, kv).load()
    print_test("Raw restored", restored.get_class_counts() == {NOT_TOUCH_LABEL: 3, TOUCHED_LABEL: 0}
               and not result.both_classes)


def test_startup_and_camera():
    """Startup failure is surfaced; camera switch failure is not"""
    print_header("Testing Startup / Camera")

    guard = TouchGuard(extractor=BrokenExtractor(), video_source=FakeVideoSource(),
                       kv_store=MemoryKeyValueStore())
    try:
        guard.start()
        raised = False
    except InitializationError:
        raised = True
    print_test("Init failure raised", raised and guard.error is not None, guard.error)

    guard, source = make_guard()
    source.broken = {3}
    guard.start()
    print_test("Switch ok", guard.switch_camera(1) and source.index == 1)
    print_test("Switch failure kept old camera", not guard.switch_camera(3) and source.index == 1,
               guard.error)
    print_test("State unaffected", guard.session.state == RunState.COLLECTING_A)

    print_test("Batch clamped", guard.set_batch_multiplier(99) and guard.settings.batch_multiplier == 20)
    print_test("Threshold clamped", guard.set_threshold(0.2) and guard.settings.threshold == 0.5)
    guard.set_muted(True)
    print_test("Mute reaches sink", guard.alert_sink.muted)
    guard.stop()
    print_test("Camera released", source.released)


def test_notification_cooldown():
    """Desktop notifications respect the cooldown"""
    print_header("Testing Notification Cooldown")

    clock = FakeClock()
    notifier = DesktopNotifier(cooldown=3.0, clock=clock)
    notifier._command = None  # log instead of spawning notify-send
    sent = [notifier.send("t", "b")]
    clock.advance(1.0)
    sent.append(notifier.send("t", "b"))
    clock.advance(2.5)
    sent.append(notifier.send("t", "b"))
    print_test("Cooldown", sent == [True, False, True], f"{sent}")


def test_logging_config():
    """Console keeps its level, the log file records DEBUG"""
    print_header("Testing Logging Config")

    with tempfile.TemporaryDirectory() as tmp:
        log_file = os.path.join(tmp, "logs", "guard.log")
        logger = setup_logging(level=logging.INFO, log_file=log_file)

        files = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        consoles = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]
        print_test("Handlers", len(files) == 1 and len(consoles) == 1 and not logger.propagate)
        print_test("Levels", logger.level == logging.DEBUG and files[0].level == logging.DEBUG
                   and consoles[0].level == logging.INFO)

        logging.getLogger("touchguard.inference").debug("frame detail")
        files[0].flush()
        with open(log_file) as f:
            print_test("Debug reaches file", "frame detail" in f.read())

        set_debug(True)
        print_test("Console debug on", consoles[0].level == logging.DEBUG)
        set_debug(False)
        print_test("Console debug off", consoles[0].level == logging.INFO)

        # Replacing the handlers closes the log file
        logger = setup_logging(level=logging.WARNING)
        print_test("Reconfigured", len(logger.handlers) == 1 and logger.level == logging.WARNING)


def main():
    print("\n" + "="*60)
    print("  Touch Guard - Automated Test Suite")
    print("="*60)

    tests = [
        test_classifier_store,
        test_snapshots,
        test_state_machine,
        test_settings,
        test_training,
        test_training_progress,
        test_training_allow_run_after_both,
        test_training_failure,
        test_single_flight,
        test_alert_debounce,
        test_threshold_boundary,
        test_loop_pacing_and_fps,
        test_loop_guards,
        test_loop_alert_failures,
        test_slow_frame_on_pause,
        test_pause_and_reset,
        test_persistence_restore,
        test_persistence_formats,
        test_startup_and_camera,
        test_notification_cooldown,
        test_logging_config,
    ]

    all_passed = True
    for test in tests:
        try:
            test()
        except Exception as e:
            print(f"❌ {test.__name__} failed: {e}")
            all_passed = False

    print_header("Test Summary")
    if all_passed:
        print("✅ All tests passed!")
    else:
        print("❌ Some tests failed")

    return 0 if all_passed else 1


if __name__ == "__main__":
    sys.exit(main())
