import itertools
import unittest

import numpy as np
import pytest
from gpu_fakes import make_engine

from corrpy.domain.errors import GpuExecutionFailed, InvalidHandle, InvalidImageData, InvalidTextureData, Timeout
from corrpy.domain.models import SlotState, StageKind
from corrpy.services.rendering.cpu_engine import CpuCorrectionEngine

W, H = 37, 21


def _enable(engine, kinds, dark, gain, mask):
    if StageKind.OFFSET in kinds:
        engine.enable_offset(dark)
    if StageKind.GAIN in kinds:
        engine.enable_gain(gain)
    if StageKind.DEFECT in kinds:
        engine.enable_defect(mask)


@pytest.mark.parametrize(
    "kinds",
    [set(c) for n in range(4) for c in itertools.combinations(list(StageKind), n)],
)
def test_zero_image_with_zero_maps_stays_zero(engine, kinds):
    zeros = np.zeros((H, W), dtype=np.uint16)
    _enable(engine, kinds, zeros, np.zeros((H, W), dtype=np.float32), zeros)
    out = engine.process_image_sync(zeros)
    assert out.dtype == np.uint16
    assert out.shape == (H, W)
    assert not out.any()


class TestCorrectionEngine(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine(W, H, frame_slot_count=3)
        self.rng = np.random.default_rng(11)

    def tearDown(self):
        self.engine.destroy()

    def _random_image(self):
        return self.rng.integers(0, 4096, size=(H, W), dtype=np.uint16)

    def test_flat_offset(self):
        self.engine.enable_offset(np.full(W * H, 120, dtype=np.uint16), 30)
        out = self.engine.process_image_sync(np.full(W * H, 500, dtype=np.uint16))
        self.assertTrue(np.all(out == 410))

    def test_offset_saturates_at_lower_bound(self):
        self.engine.enable_offset(np.full((H, W), 900, dtype=np.uint16), 100)
        out = self.engine.process_image_sync(np.full((H, W), 500, dtype=np.uint16))
        self.assertTrue(np.all(out == 0))

    def test_no_stage_round_trip(self):
        image = self._random_image()
        np.testing.assert_array_equal(self.engine.process_image_sync(image), image)
        self.engine.enable_offset(np.zeros((H, W), dtype=np.uint16))
        self.engine.disable(StageKind.OFFSET)
        np.testing.assert_array_equal(self.engine.process_image_sync(image), image)

    def test_idempotent_processing(self):
        self.engine.enable_offset(self._random_image() // 8, 64)
        self.engine.enable_gain(self.rng.uniform(0.8, 1.2, size=(H, W)).astype(np.float32))
        mask = (self.rng.random((H, W)) < 0.02).astype(np.uint16)
        self.engine.enable_defect(mask)
        image = self._random_image()
        first = self.engine.process_image_sync(image)
        second = self.engine.process_image_sync(image)
        np.testing.assert_array_equal(first, second)

    def test_matches_cpu_reference(self):
        dark = self._random_image() // 16
        gain = self.rng.uniform(0.5, 1.5, size=(H, W)).astype(np.float32)
        mask = (self.rng.random((H, W)) < 0.05).astype(np.uint16)
        image = self._random_image()
        cpu = CpuCorrectionEngine.create(W, H)
        for eng in (self.engine, cpu):
            eng.enable_offset(dark, 10)
            eng.enable_gain(gain)
            eng.enable_defect(mask, separable=True)
        np.testing.assert_array_equal(self.engine.process_image_sync(image), cpu.process_image_sync(image))

    def test_single_defect_uniform_neighbourhood(self):
        mask = np.zeros((H, W), dtype=np.uint16)
        mask[10, 36] = 1
        self.engine.enable_defect(mask)
        image = np.full((H, W), 777, dtype=np.uint16)
        image[10, 36] = 1
        out = self.engine.process_image_sync(image)
        self.assertEqual(out[10, 36], 777)
        self.assertTrue(np.all(out == 777))

    def test_input_validation(self):
        device = self.engine.context.device
        buffers_before = len(device.buffers)
        with self.assertRaises(InvalidImageData):
            self.engine.process_image(np.zeros(W * H - 1, dtype=np.uint16))
        with self.assertRaises(InvalidTextureData):
            self.engine.enable_gain(np.ones(W * H + 1, dtype=np.float32))
        with self.assertRaises(InvalidTextureData):
            self.engine.enable_defect(np.zeros(W * H - 1, dtype=np.uint16))
        self.assertEqual(self.engine.stage_kinds(), [])
        # rejected before any shader, pipeline or buffer was requested
        self.assertEqual(device.shader_modules, [])
        self.assertEqual(device.pipelines, [])
        self.assertEqual(len(device.buffers), buffers_before)

    def test_process_image_returns_future(self):
        future = self.engine.process_image(np.ones((H, W), dtype=np.uint16))
        self.assertTrue(np.all(future.result(timeout=5) == 1))
        self.assertTrue(self.engine.drain(timeout=5))
        self.assertEqual(self.engine.slot_states(), [SlotState.IDLE] * 3)

    def test_readback_timeout(self):
        engine = make_engine(W, H, frame_slot_count=1, readback_timeout=0.05)
        device = engine.context.device
        try:
            device.map_gate.clear()
            future = engine.process_image(np.ones((H, W), dtype=np.uint16))
            with self.assertRaises(Timeout):
                future.result(timeout=5)
            self.assertEqual(engine.slot_states(), [SlotState.DISPATCHED])
            device.map_gate.set()
            self.assertTrue(engine.drain(timeout=5))
        finally:
            device.map_gate.set()
            engine.destroy()


class TestEngineLifecycle(unittest.TestCase):
    def test_destroy_is_idempotent_and_releases_buffers(self):
        engine = make_engine(8, 8, frame_slot_count=2)
        device = engine.context.device
        engine.enable_offset(np.zeros((8, 8), dtype=np.uint16))
        engine.process_image_sync(np.ones((8, 8), dtype=np.uint16))
        engine.destroy()
        engine.destroy()
        self.assertTrue(engine.is_destroyed)
        self.assertEqual(device.live_buffers(), [])
        self.assertTrue(device.destroyed)

    def test_use_after_destroy(self):
        engine = make_engine(8, 8)
        engine.destroy()
        with self.assertRaises(InvalidHandle):
            engine.process_image(np.zeros((8, 8), dtype=np.uint16))
        with self.assertRaises(InvalidHandle):
            engine.enable_gain(np.ones((8, 8), dtype=np.float32))

    def test_slots_share_one_snapshot_buffer(self):
        engine = make_engine(8, 8, frame_slot_count=4)
        device = engine.context.device
        try:
            labels = [b.label for b in device.live_buffers()]
            self.assertEqual(len(labels), 4 * 3)
            self.assertNotIn("frame.snapshot", labels)
            engine.enable_defect(np.zeros((8, 8), dtype=np.uint16))
            labels = [b.label for b in device.live_buffers()]
            self.assertEqual(labels.count("frame.snapshot"), 1)
        finally:
            engine.destroy()

    def test_destroy_fails_frames_still_in_flight(self):
        engine = make_engine(8, 8, frame_slot_count=2)
        device = engine.context.device
        try:
            device.map_gate.clear()
            future = engine.process_image(np.ones((8, 8), dtype=np.uint16))
            engine.destroy(timeout=0.1)
            with self.assertRaises(GpuExecutionFailed):
                future.result(timeout=5)
            # the abandoned slot keeps its buffers until the device goes away
            self.assertIn("slot0.readback", [b.label for b in device.live_buffers()])
            self.assertNotIn("slot1.readback", [b.label for b in device.live_buffers()])
            self.assertTrue(device.destroyed)
        finally:
            device.map_gate.set()

    def test_context_manager(self):
        with make_engine(4, 4) as engine:
            self.assertEqual(engine.capacity(), 4)
        self.assertTrue(engine.is_destroyed)


def _real_gpu_available():
    try:
        import wgpu

        return bool(wgpu.gpu.enumerate_adapters_sync())
    except Exception:
        return False


@pytest.mark.skipif(not _real_gpu_available(), reason="no WebGPU adapter available")
def test_real_gpu_matches_cpu_reference():
    from corrpy.services.rendering.gpu_engine import CorrectionEngine

    rng = np.random.default_rng(5)
    w, h = 67, 45
    dark = rng.integers(0, 256, size=(h, w), dtype=np.uint16)
    gain = rng.uniform(0.5, 2.0, size=(h, w)).astype(np.float32)
    mask = (rng.random((h, w)) < 0.03).astype(np.uint16)
    image = rng.integers(0, 60000, size=(h, w), dtype=np.uint16)

    cpu = CpuCorrectionEngine.create(w, h)
    with CorrectionEngine.create(w, h, frame_slot_count=2) as gpu:
        for eng in (gpu, cpu):
            eng.enable_offset(dark, 40)
            eng.enable_gain(gain)
            eng.enable_defect(mask)
        diff = gpu.process_image_sync(image).astype(np.int32) - cpu.process_image_sync(image).astype(np.int32)
    # fused multiply-add on some drivers can move a half-way gain product by one
    assert np.abs(diff).max() <= 1
