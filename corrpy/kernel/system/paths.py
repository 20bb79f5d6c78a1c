import os
import sys

_PACKAGE_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def get_resource_path(relative_path: str) -> str:
    """
    Resolves a package resource (e.g. a WGSL kernel), also inside frozen bundles.
    """
    if getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS"):
        return os.path.join(sys._MEIPASS, "corrpy", relative_path)
    return os.path.join(_PACKAGE_ROOT, relative_path)
