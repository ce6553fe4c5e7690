import pytest

from zettelcards.backend.errors import InvalidInputError
from zettelcards.backend.settings_store import SETTINGS_KEY, default_settings


def test_defaults_when_nothing_saved(settings_repo):
    settings = settings_repo.load("alice")
    assert settings == default_settings()
    assert settings["defaultCategory"] == "tech"
    assert settings["cardsPerPage"] == 8
    assert list(settings["categories"]) == ["tech", "biz", "art", "lit", "personal"]
    assert settings["categories"]["art"] == {
        "name": "Искусство",
        "color": "#f3e5f5",
        "subcategories": ["Живопись", "Теория", "История"],
    }


def test_defaults_are_not_shared(settings_repo):
    first = settings_repo.load("alice")
    first["categories"]["tech"]["subcategories"].append("ML")
    assert settings_repo.load("alice") == default_settings()


def test_save_then_load_returns_same_object(settings_repo):
    custom = {"defaultCategory": "lit", "cardsPerPage": 4, "categories": {"lit": {"name": "Книги", "color": "#000", "subcategories": []}}}
    settings_repo.save("alice", custom)
    assert settings_repo.load("alice") == custom


def test_save_overwrites_without_merge(settings_repo):
    settings_repo.save("alice", {"cardsPerPage": 4, "autoSave": True})
    settings_repo.save("alice", {"cardsPerPage": 6})
    assert settings_repo.load("alice") == {"cardsPerPage": 6}


def test_users_are_isolated(settings_repo):
    settings_repo.save("alice", {"cardsPerPage": 2})
    assert settings_repo.load("bob") == default_settings()
    assert settings_repo.load("alice") == {"cardsPerPage": 2}


def test_blob_is_stored_as_string_property(settings_repo):
    settings_repo.save("alice", {"cardsPerPage": 2})
    raw = settings_repo.properties.get_property("alice", SETTINGS_KEY)
    assert raw == '{"cardsPerPage": 2}'


@pytest.mark.parametrize("bad", [None, [], "text", 5])
def test_non_object_settings_rejected(settings_repo, bad):
    with pytest.raises(InvalidInputError):
        settings_repo.save("alice", bad)


def test_corrupt_blob_is_reported(settings_repo):
    settings_repo.properties.set_property("alice", SETTINGS_KEY, "{not json")
    with pytest.raises(InvalidInputError):
        settings_repo.load("alice")
