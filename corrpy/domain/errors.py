class CorrectionError(Exception):
    """Base class for every error raised by corrpy."""


class ConfigurationError(CorrectionError):
    """Rejected on the host before any GPU call is issued."""


class InvalidImageData(ConfigurationError):
    pass


class InvalidTextureData(ConfigurationError):
    pass


class InvalidKernelWeights(ConfigurationError):
    pass


class ResourceError(CorrectionError):
    """Adapter, device or allocation failure. The pipeline is unusable."""


class NoSuitableAdapter(ResourceError):
    pass


class DeviceCreationFailed(ResourceError):
    pass


class ShaderCreationError(ResourceError):
    pass


class BufferCreationError(ResourceError):
    pass


class ExecutionError(CorrectionError):
    """Submission, mapping or fence failure. Fatal for one frame only."""


class GpuExecutionFailed(ExecutionError):
    pass


class Timeout(ExecutionError, TimeoutError):
    pass


class CapacityError(CorrectionError):
    """Recoverable by backing off and retrying."""


class RingBufferFull(CapacityError):
    pass


class InvalidHandle(CorrectionError):
    pass
