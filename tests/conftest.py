"""Shared pytest fixtures for Tembea tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_process_singletons():
    """Reset module-level singletons to avoid cross-test contamination.

    The availability cache, the M-Pesa client and the HTTP layer's
    reconciler are process-wide; a value cached by one test would otherwise
    leak into the next.
    """
    import tembea.api.runtime as runtime
    import tembea.mpesa.client as mpesa_client
    from tembea.domain.capacity import get_availability_cache

    get_availability_cache().clear()
    runtime._reconciler = None
    mpesa_client._client = None
    yield
    get_availability_cache().clear()
    runtime._reconciler = None
    mpesa_client._client = None
