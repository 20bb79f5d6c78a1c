import ctypes
import itertools
import threading
from enum import IntEnum
from typing import Any, Callable, Dict, Optional

import numpy as np

from corrpy.domain.errors import (
    CapacityError,
    ConfigurationError,
    CorrectionError,
    InvalidHandle,
    InvalidImageData,
    ResourceError,
    Timeout,
)
from corrpy.ffi.power_preference import CPowerPreference
from corrpy.kernel.system.logging import configure_logging, get_logger
from corrpy.services.rendering.gpu_engine import CorrectionEngine

logger = get_logger(__name__)

NULL_HANDLE = 0


class Status(IntEnum):
    OK = 0
    INVALID_HANDLE = 1
    INVALID_ARGUMENT = 2
    RESOURCE_ERROR = 3
    EXECUTION_ERROR = 4
    RING_BUFFER_FULL = 5
    TIMEOUT = 6


def status_for(error: BaseException) -> Status:
    if isinstance(error, InvalidHandle):
        return Status.INVALID_HANDLE
    if isinstance(error, ConfigurationError):
        return Status.INVALID_ARGUMENT
    if isinstance(error, ResourceError):
        return Status.RESOURCE_ERROR
    if isinstance(error, Timeout):
        return Status.TIMEOUT
    if isinstance(error, CapacityError):
        return Status.RING_BUFFER_FULL
    return Status.EXECUTION_ERROR


def as_array(ptr: Any, length: int, ctype: Any) -> np.ndarray:
    """
    Views caller memory as a 1-D array without copying or taking ownership.
    `ptr` may be a ctypes pointer, a ctypes array or an integer address.
    """
    if ptr is None or (isinstance(ptr, int) and ptr == 0):
        raise InvalidImageData("Null data pointer")
    if length <= 0:
        raise InvalidImageData(f"Invalid element count {length}")
    typed = ctypes.cast(ptr, ctypes.POINTER(ctype))
    if not typed:
        raise InvalidImageData("Null data pointer")
    return np.ctypeslib.as_array(typed, shape=(length,))


class HandleRegistry:
    """
    Opaque integer handles for engines created across the C boundary.
    Freed or unknown handles are reported, never dereferenced.
    """

    def __init__(self, engine_factory: Callable[..., Any] = CorrectionEngine.create) -> None:
        self._engine_factory = engine_factory
        self._engines: Dict[int, Any] = {}
        self._ids = itertools.count(1)
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._engines)

    def get(self, handle: int) -> Any:
        with self._guard:
            engine = self._engines.get(handle)
        if engine is None:
            raise InvalidHandle(f"Unknown GPU handle {handle}")
        return engine

    def create(self, width: int, height: int, power_preference: int = CPowerPreference.HIGH_PERFORMANCE, frame_slot_count: Optional[int] = None) -> int:
        try:
            pref = CPowerPreference(power_preference).to_power_preference()
            engine = self._engine_factory(width, height, frame_slot_count=frame_slot_count, power_preference=pref)
        except (CorrectionError, ValueError) as e:
            logger.error(f"create_gpu_handle({width}, {height}) failed: {e}")
            return NULL_HANDLE
        with self._guard:
            handle = next(self._ids)
            self._engines[handle] = engine
        return handle

    def _call(self, handle: int, action: Callable[[Any], None]) -> Status:
        try:
            action(self.get(handle))
        except CorrectionError as e:
            status = status_for(e)
            logger.error(f"GPU handle {handle}: {status.name}: {e}")
            return status
        return Status.OK

    def set_dark_map(self, handle: int, ptr: Any, length: int, offset: int = 0) -> Status:
        return self._call(handle, lambda engine: engine.enable_offset(as_array(ptr, length, ctypes.c_uint16).copy(), offset))

    def set_gain_map(self, handle: int, ptr: Any, length: int) -> Status:
        return self._call(handle, lambda engine: engine.enable_gain(as_array(ptr, length, ctypes.c_float).copy()))

    def set_defect_map(self, handle: int, ptr: Any, length: int) -> Status:
        return self._call(handle, lambda engine: engine.enable_defect(as_array(ptr, length, ctypes.c_uint16).copy()))

    def process_image(self, handle: int, ptr: Any, length: int) -> Status:
        """Corrects the caller's buffer in place once the frame completes."""

        def run(engine: Any) -> None:
            data = as_array(ptr, length, ctypes.c_uint16)
            result = engine.process_image_sync(data.copy())
            data[:] = result.ravel()

        return self._call(handle, run)

    def free(self, handle: int) -> Status:
        with self._guard:
            engine = self._engines.pop(handle, None)
        if engine is None:
            return Status.INVALID_HANDLE
        try:
            engine.destroy()
        except (CorrectionError, RuntimeError) as e:
            logger.error(f"GPU handle {handle}: teardown failed: {e}")
            return Status.EXECUTION_ERROR
        return Status.OK

    def free_all(self) -> None:
        with self._guard:
            handles = list(self._engines)
        for handle in handles:
            self.free(handle)


_registry = HandleRegistry()


def create_gpu_handle(width: int, height: int, power_preference: int = CPowerPreference.HIGH_PERFORMANCE, frame_slot_count: Optional[int] = None) -> int:
    configure_logging()
    return _registry.create(width, height, power_preference, frame_slot_count)


def set_dark_map(handle: int, ptr: Any, length: int, offset: int = 0) -> int:
    return int(_registry.set_dark_map(handle, ptr, length, offset))


def set_gain_map(handle: int, ptr: Any, length: int) -> int:
    return int(_registry.set_gain_map(handle, ptr, length))


def set_defect_map(handle: int, ptr: Any, length: int) -> int:
    return int(_registry.set_defect_map(handle, ptr, length))


def process_image(handle: int, ptr: Any, length: int) -> int:
    return int(_registry.process_image(handle, ptr, length))


def free_gpu_handle(handle: int) -> int:
    return int(_registry.free(handle))
