import numpy as np
import pytest

from vargrad import has_cuda, set_grad_enabled


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    if request.param == "cuda" and not has_cuda():
        pytest.skip("cupy not installed")
    return request.param


@pytest.fixture(autouse=True)
def _restore_grad_mode():
    yield
    set_grad_enabled(True)
