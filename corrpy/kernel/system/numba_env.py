import os

import numba  # type: ignore

DEFAULT_THREADING_LAYER = "omp"


def pin_threading_layer() -> str:
    """
    Selects a numba threading layer that tolerates parallel kernels launched
    from several threads at once and lets the interpreter exit afterwards.
    NUMBA_THREADING_LAYER, or an explicit numba.config setting, wins.
    Has no effect once a parallel kernel has run.
    """
    os.environ.setdefault("NUMBA_THREADING_LAYER", DEFAULT_THREADING_LAYER)
    if numba.config.THREADING_LAYER == "default":
        numba.config.THREADING_LAYER = os.environ["NUMBA_THREADING_LAYER"]
    return numba.config.THREADING_LAYER
