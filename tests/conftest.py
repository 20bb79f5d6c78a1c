import os

import pytest

# Quiet pipeline logs during test runs
os.environ.setdefault("CORRPY_LOG_LEVEL", "WARNING")
# Parallel kernels run on engine loop threads; the default layer can hang at exit
os.environ.setdefault("NUMBA_THREADING_LAYER", "omp")


@pytest.fixture
def fake_adapter():
    from gpu_fakes import FakeAdapter

    return FakeAdapter()


@pytest.fixture
def fake_context(fake_adapter):
    from gpu_fakes import make_context

    context = make_context(fake_adapter)
    yield context
    context.close()


@pytest.fixture
def engine():
    from gpu_fakes import make_engine

    eng = make_engine(37, 21, frame_slot_count=3)
    yield eng
    eng.destroy()
