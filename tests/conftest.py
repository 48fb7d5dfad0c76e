import pytest

from teleblog.conversation import StateStore
from teleblog.dispatcher import Dispatcher
from teleblog.repository import Repository
from teleblog.storage import FileBackend


@pytest.fixture
async def backend(tmp_path):
    b = FileBackend(str(tmp_path / "data"))
    await b.load()
    return b


@pytest.fixture
def repository(backend):
    return Repository(backend, url_template="https://{subdomain}.example.com")


@pytest.fixture
def dispatcher(repository):
    return Dispatcher(repository, StateStore())
