import os
import threading
from typing import Any, Dict

from corrpy.domain.errors import ShaderCreationError
from corrpy.kernel.system.logging import get_logger
from corrpy.kernel.system.paths import get_resource_path

logger = get_logger(__name__)


class ShaderLoader:
    """
    Compiles WGSL kernels once per device and caches the modules.
    """

    def __init__(self, device: Any) -> None:
        self._device = device
        self._modules: Dict[str, Any] = {}
        self._guard = threading.Lock()

    @staticmethod
    def read_source(relative_path: str) -> str:
        path = get_resource_path(relative_path)
        if not os.path.exists(path):
            raise ShaderCreationError(f"Shader not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def load(self, relative_path: str) -> Any:
        with self._guard:
            module = self._modules.get(relative_path)
            if module is not None:
                return module
            code = self.read_source(relative_path)
            try:
                module = self._device.create_shader_module(label=os.path.basename(relative_path), code=code)
            except Exception as e:
                raise ShaderCreationError(f"Failed to compile {relative_path}: {e}") from e
            self._modules[relative_path] = module
            logger.debug(f"Compiled shader {relative_path}")
            return module
