from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

import wgpu  # type: ignore

from corrpy.domain.errors import DeviceCreationFailed, NoSuitableAdapter
from corrpy.domain.types import PowerPreference
from corrpy.kernel.system.logging import get_logger

logger = get_logger(__name__)

# Packed-u32 kernels need no native 16-bit features.
REQUIRED_FEATURES: tuple[str, ...] = ()

# Full-frame gain maps (4 B/px) exceed the default 128 MiB binding limit at 6144x6144.
FORWARDED_LIMITS = ("max-storage-buffer-binding-size", "max-buffer-size")

ADAPTER_TYPE_RANK = {
    "discretegpu": 0,
    "integratedgpu": 1,
    "virtualgpu": 2,
    "cpu": 3,
}
UNKNOWN_ADAPTER_RANK = 4


def adapter_info(adapter: Any) -> Dict[str, Any]:
    """Adapter info across wgpu releases (`info` property or `request_adapter_info()`)."""
    info = getattr(adapter, "info", None)
    if info is None:
        request_info = getattr(adapter, "request_adapter_info", None)
        info = request_info() if callable(request_info) else {}
    return dict(info or {})


def adapter_type(adapter: Any) -> str:
    raw = str(adapter_info(adapter).get("adapter_type", ""))
    return raw.replace("-", "").replace("_", "").replace(" ", "").lower()


def adapter_rank(adapter: Any, power_preference: PowerPreference) -> int:
    rank = ADAPTER_TYPE_RANK.get(adapter_type(adapter), UNKNOWN_ADAPTER_RANK)
    if power_preference == PowerPreference.LOW_POWER and rank in (0, 1):
        return 1 - rank
    return rank


def rank_adapters(
    adapters: Iterable[Any],
    power_preference: PowerPreference = PowerPreference.HIGH_PERFORMANCE,
    required_features: Sequence[str] = REQUIRED_FEATURES,
) -> List[Any]:
    """
    Filters adapters lacking a required feature and orders the rest:
    discrete, integrated, virtual, CPU. Low-power swaps the first two.
    Ties keep enumeration order.
    """
    required = set(required_features)
    suitable = [a for a in adapters if required.issubset(set(getattr(a, "features", ()) or ()))]
    return sorted(suitable, key=lambda a: adapter_rank(a, power_preference))


def _enumerate_adapters(gpu: Any, power_preference: PowerPreference) -> List[Any]:
    enumerate_sync = getattr(gpu, "enumerate_adapters_sync", None)
    adapters: List[Any] = []
    if callable(enumerate_sync):
        adapters = list(enumerate_sync())
    if not adapters:
        request_sync = getattr(gpu, "request_adapter_sync", None)
        if callable(request_sync):
            adapter = request_sync(power_preference=power_preference.wgpu_value)
            if adapter is not None:
                adapters = [adapter]
    return adapters


def _forwarded_limits(adapter: Any) -> Dict[str, int]:
    limits = dict(getattr(adapter, "limits", None) or {})
    return {k: v for k, v in limits.items() if k.replace("_", "-") in FORWARDED_LIMITS}


@dataclass
class GPUContext:
    """
    One logical device and its queue, created once per pipeline and shared
    read-only by every component downstream.
    """

    adapter: Any
    device: Any
    power_preference: PowerPreference
    info: Dict[str, Any] = field(default_factory=dict)
    features: FrozenSet[str] = frozenset()
    limits: Dict[str, Any] = field(default_factory=dict)
    _closed: bool = False

    @property
    def queue(self) -> Any:
        return self.device.queue

    @property
    def backend_name(self) -> str:
        return str(self.info.get("backend_type", "") or "WEBGPU")

    @property
    def adapter_description(self) -> str:
        return str(self.info.get("description") or self.info.get("device") or "unknown adapter")

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        destroy = getattr(self.device, "destroy", None)
        if callable(destroy):
            destroy()
        logger.info(f"GPU context released ({self.adapter_description})")


def acquire_context(
    power_preference: Optional[PowerPreference | str] = None,
    required_features: Sequence[str] = REQUIRED_FEATURES,
    gpu: Any = None,
) -> GPUContext:
    """
    Selects an adapter and opens a device on it. Blocks until the driver's
    adapter/device negotiation resolves; this happens once per pipeline.
    """
    pref = PowerPreference(power_preference or PowerPreference.HIGH_PERFORMANCE)
    gpu = gpu if gpu is not None else wgpu.gpu

    try:
        adapters = _enumerate_adapters(gpu, pref)
    except Exception as e:
        raise NoSuitableAdapter(f"Adapter enumeration failed: {e}") from e

    ranked = rank_adapters(adapters, pref, required_features)
    if not ranked:
        raise NoSuitableAdapter(f"None of {len(adapters)} adapter(s) supports required features {sorted(required_features)}")

    adapter = ranked[0]
    info = adapter_info(adapter)
    features = list(required_features)

    try:
        device = adapter.request_device_sync(
            label="corrpy.device",
            required_features=features,
            required_limits=_forwarded_limits(adapter),
        )
    except Exception as e:
        raise DeviceCreationFailed(f"Device request rejected by {info.get('description', 'adapter')}: {e}") from e
    if device is None:
        raise DeviceCreationFailed("Device request returned no device")

    context = GPUContext(
        adapter=adapter,
        device=device,
        power_preference=pref,
        info=info,
        features=frozenset(features),
        limits=dict(getattr(device, "limits", None) or {}),
    )
    logger.info(f"GPU context: {context.adapter_description} [{info.get('adapter_type', '?')}/{context.backend_name}] features={sorted(features)}")
    return context
