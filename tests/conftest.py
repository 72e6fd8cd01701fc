import pytest

from coordination_gateway.runtime import GatewayRuntime, set_runtime


class FakeClock:
    """Manually advanced clock so timeout behaviour is deterministic."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime(clock):
    rt = GatewayRuntime(clock=clock)
    set_runtime(rt)
    yield rt
    set_runtime(None)
