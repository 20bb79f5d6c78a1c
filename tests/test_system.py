import asyncio
import io
import logging
import os
import threading
import time
import unittest
from unittest.mock import patch

import numba

from corrpy.domain.types import PowerPreference
from corrpy.kernel.system.config import load_app_config
from corrpy.kernel.system.event_loop import EventLoopThread
from corrpy.kernel.system.logging import configure_logging, get_logger
from corrpy.kernel.system.numba_env import pin_threading_layer
from corrpy.kernel.system.rwlock import ReadWriteLock


class TestReadWriteLock(unittest.TestCase):
    def test_readers_share(self):
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=2)

        def reader():
            with lock.read_locked():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(2)
        self.assertFalse(any(t.is_alive() for t in threads))

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        events = []
        lock.acquire_write()

        def reader():
            with lock.read_locked():
                events.append("read")

        t = threading.Thread(target=reader)
        t.start()
        time.sleep(0.05)
        events.append("write-done")
        lock.release_write()
        t.join(2)
        self.assertEqual(events, ["write-done", "read"])

    def test_waiting_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        lock.acquire_read()
        order = []

        def writer():
            with lock.write_locked():
                order.append("write")

        def late_reader():
            with lock.read_locked():
                order.append("read")

        w = threading.Thread(target=writer)
        w.start()
        time.sleep(0.05)
        r = threading.Thread(target=late_reader)
        r.start()
        time.sleep(0.05)
        lock.release_read()
        w.join(2)
        r.join(2)
        self.assertEqual(order, ["write", "read"])

    def test_unbalanced_release(self):
        lock = ReadWriteLock()
        with self.assertRaises(RuntimeError):
            lock.release_read()
        with self.assertRaises(RuntimeError):
            lock.release_write()


class TestEventLoopThread(unittest.TestCase):
    def test_runs_coroutines_from_caller_thread(self):
        loop = EventLoopThread("test-loop").start()
        try:

            async def work():
                await asyncio.sleep(0.01)
                return threading.current_thread().name

            self.assertEqual(loop.submit(work()).result(timeout=2), "test-loop")
        finally:
            loop.stop()
        self.assertFalse(loop.is_running)

    def test_submit_after_stop(self):
        loop = EventLoopThread().start()
        loop.stop()

        async def never():
            return 1

        with self.assertRaises(RuntimeError):
            loop.submit(never())

    def test_stop_cancels_pending(self):
        loop = EventLoopThread().start()
        future = loop.submit(asyncio.sleep(30))
        loop.stop()
        self.assertTrue(future.cancelled())


class TestConfig(unittest.TestCase):
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = load_app_config()
        self.assertEqual(cfg.frame_slot_count, 10)
        self.assertEqual(cfg.power_preference, PowerPreference.HIGH_PERFORMANCE)
        self.assertEqual(cfg.readback_timeout, 5.0)
        self.assertTrue(cfg.use_gpu)
        self.assertFalse(cfg.cpu_fallback)

    def test_environment_overrides(self):
        env = {
            "CORRPY_FRAME_SLOTS": "3",
            "CORRPY_POWER_PREFERENCE": "low-power",
            "CORRPY_READBACK_TIMEOUT": "0",
            "CORRPY_USE_GPU": "off",
            "CORRPY_CPU_FALLBACK": "yes",
            "CORRPY_LOG_LEVEL": "debug",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = load_app_config()
        self.assertEqual(cfg.frame_slot_count, 3)
        self.assertEqual(cfg.power_preference, PowerPreference.LOW_POWER)
        self.assertIsNone(cfg.readback_timeout)
        self.assertFalse(cfg.use_gpu)
        self.assertTrue(cfg.cpu_fallback)
        self.assertEqual(cfg.log_level, "DEBUG")


def test_loggers_nest_under_package_root():
    assert get_logger("corrpy.services.rendering.gpu_engine").name == "corrpy.services.rendering.gpu_engine"
    assert get_logger("tests.helper").name == "corrpy.tests.helper"
    root = logging.getLogger("corrpy")
    handlers = list(root.handlers)
    get_logger("again")
    assert root.handlers == handlers
    assert root.propagate
    assert any(isinstance(h, logging.NullHandler) for h in handlers)


class TestLogging(unittest.TestCase):
    def test_records_reach_application_handlers(self):
        with self.assertLogs(level="WARNING") as captured:
            get_logger("corrpy.services.rendering.frame_ring").warning("slot 3 abandoned")
        self.assertEqual(captured.records[0].name, "corrpy.services.rendering.frame_ring")

    def test_console_handler_is_opt_in_and_single(self):
        root = logging.getLogger("corrpy")
        level = root.level
        stream = io.StringIO()
        handler = configure_logging("debug", stream=stream)
        try:
            self.assertIs(configure_logging(), handler)
            self.assertEqual([h for h in root.handlers if h.get_name() == "corrpy.console"], [handler])
            get_logger("corrpy.test").debug("visible")
            self.assertIn("[DEBUG] corrpy.test: visible", stream.getvalue())
        finally:
            root.removeHandler(handler)
            root.setLevel(level)


class TestNumbaThreadingLayer(unittest.TestCase):
    def test_pins_thread_safe_layer_by_default(self):
        with patch.dict(os.environ, {}, clear=True), patch.object(numba.config, "THREADING_LAYER", "default"):
            self.assertEqual(pin_threading_layer(), "omp")
            self.assertEqual(os.environ["NUMBA_THREADING_LAYER"], "omp")

    def test_explicit_choice_wins(self):
        with patch.dict(os.environ, {"NUMBA_THREADING_LAYER": "workqueue"}, clear=True), patch.object(numba.config, "THREADING_LAYER", "default"):
            self.assertEqual(pin_threading_layer(), "workqueue")
        with patch.dict(os.environ, {}, clear=True), patch.object(numba.config, "THREADING_LAYER", "tbb"):
            self.assertEqual(pin_threading_layer(), "tbb")
