"""Pytest configuration for provision_engine tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from provision_engine.models import Provision, ProvisionState, new_id
from provision_engine.inmemory import InMemoryProvisionStore


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def no_sleep():
    """Sleep replacement that returns immediately."""
    return _no_sleep


@pytest.fixture
def provision_store():
    return InMemoryProvisionStore()


@pytest.fixture
def make_provision(provision_store):
    """Persist a provision and return it."""

    async def _make(state: ProvisionState = ProvisionState.PENDING, **fields) -> Provision:
        provision = Provision(id=fields.pop('id', None) or new_id(), state=state, **fields)
        return await provision_store.create(provision)

    return _make
