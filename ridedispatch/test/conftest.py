import pytest

from ridedispatch.test.support import Engine


@pytest.fixture
async def engine():
    eng = Engine()
    yield eng
    await eng.coordinator.shutdown()


@pytest.fixture
async def engine_factory():
    created = []

    def factory(**overrides):
        eng = Engine(**overrides)
        created.append(eng)
        return eng

    yield factory
    for eng in created:
        await eng.coordinator.shutdown()
