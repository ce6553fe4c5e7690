import pytest

from zettelcards.backend.server import create_app
from zettelcards.backend.settings_store import PropertyStore, SettingsRepository
from zettelcards.backend.storage import FileRepository, FolderLocator


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def config_dir(tmp_path):
    return tmp_path / "config"


@pytest.fixture
def locator(data_dir, config_dir):
    return FolderLocator(data_dir, config_dir / "storage.json")


@pytest.fixture
def files(locator):
    return FileRepository(locator, "Zettelkasten_Cards")


@pytest.fixture
def settings_repo(config_dir):
    return SettingsRepository(PropertyStore(config_dir / "users"))


@pytest.fixture
def app(data_dir, config_dir):
    app = create_app(data_dir=data_dir, config_dir=config_dir)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def service(app):
    return app.extensions["zettelcards"]
