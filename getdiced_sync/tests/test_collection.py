"""Local store: opening, catalog queries, folders and decks."""

import sqlite3

import pytest

from .. import (
    BundleMissingError,
    CardCollection,
    CardSearch,
    Deck,
    DeckFolder,
    DeckSlotType,
    Folder,
    InvalidSlotError,
    SpectacleType,
    StorageError,
    StorageErrorKind,
    create_database,
)
from .conftest import make_card


@pytest.fixture
def catalog_store(tmp_path):
    """A store seeded from a template that already holds a few cards."""
    template = create_database(
        tmp_path / "template.db",
        cards=[
            make_card(1, name="John Cena", card_type="SingleCompetitorCard", division="Men's", power=8),
            make_card(2, name="Cena Crusher", rules_text="Draw a card.", atk_type="Strike"),
            make_card(3, name="100% Effort", release_set="Core", play_order="Lead"),
            make_card(4, name="1000 Effort", release_set="Core", play_order="Followup"),
            make_card(5, name="Under_score", is_banned=True),
            make_card(6, name="Grand Entrance", card_type="EntranceCard"),
        ],
        related_finishes=[("card-00001", "card-00002")],
    )
    col = CardCollection.open(tmp_path / "user_cards.db", template)
    yield col
    col.close()


# --- opening ---


def test_open_seeds_from_bundled_template(tmp_path):
    col = CardCollection.open(tmp_path / "user_cards.db")

    assert (tmp_path / "user_cards.db").exists()
    assert col.get_card_count() == 0
    col.ensure_schema()
    col.ensure_schema()
    col.close()


def test_open_existing_store_does_not_reseed(catalog_store, tmp_path):
    catalog_store.ensure_default_folders()
    catalog_store.add_card_to_folder("card-00001", "owned")
    catalog_store.close()

    col = CardCollection.open(tmp_path / "user_cards.db", tmp_path / "missing.db")

    assert col.get_card_count() == 6
    assert col.get_quantity("card-00001", "owned") == 1
    col.close()


def test_open_without_template_raises_bundle_missing(tmp_path):
    with pytest.raises(BundleMissingError) as exc_info:
        CardCollection.open(tmp_path / "user_cards.db", tmp_path / "nope.db")

    assert exc_info.value.kind == StorageErrorKind.BUNDLE_MISSING
    assert not (tmp_path / "user_cards.db").exists()


def test_open_in_missing_directory(tmp_path):
    with pytest.raises(StorageError) as exc_info:
        CardCollection.open(tmp_path / "nowhere" / "user_cards.db")

    assert exc_info.value.kind == StorageErrorKind.NOT_FOUND


def test_open_corrupt_file(tmp_path):
    path = tmp_path / "user_cards.db"
    path.write_bytes(b"this is not a database file " * 100)

    with pytest.raises(StorageError) as exc_info:
        CardCollection.open(path)

    assert exc_info.value.kind == StorageErrorKind.CORRUPT


def test_closed_store_is_unavailable(tmp_path):
    col = CardCollection.open(tmp_path / "user_cards.db")
    col.close()

    with pytest.raises(StorageError) as exc_info:
        col.get_card_count()

    assert exc_info.value.kind == StorageErrorKind.UNAVAILABLE


# --- search ---


def test_search_by_name_is_case_insensitive_substring(catalog_store):
    names = [c.name for c in catalog_store.search_cards("cena")]

    assert names == ["Cena Crusher", "John Cena"]


def test_search_prefix(catalog_store):
    names = [c.name for c in catalog_store.search_cards("cena", prefix=True)]

    assert names == ["Cena Crusher"]


def test_search_escapes_like_wildcards(catalog_store):
    assert [c.name for c in catalog_store.search_cards("100%")] == ["100% Effort"]
    assert [c.name for c in catalog_store.search_cards("e_a")] == []
    assert [c.name for c in catalog_store.search_cards("r_s")] == ["Under_score"]


def test_search_filters_combine(catalog_store):
    assert [c.id for c in catalog_store.search_cards(card_type="SingleCompetitorCard")] == ["card-00001"]
    assert [c.id for c in catalog_store.search_cards("effort", play_order="Lead")] == ["card-00003"]
    assert [c.id for c in catalog_store.search_cards(is_banned=True)] == ["card-00005"]
    assert [c.id for c in catalog_store.search_cards("draw", match_rules_text=True)] == ["card-00002"]


def test_search_limit(catalog_store):
    assert len(catalog_store.search_cards(limit=2)) == 2
    assert catalog_store.search_cards(limit=0) == []
    with pytest.raises(ValueError):
        catalog_store.search(CardSearch(limit=-1))


def test_search_values_are_bound_not_interpolated(catalog_store):
    assert catalog_store.search_cards("'; DROP TABLE cards; --") == []
    assert catalog_store.get_card_count() == 6


def test_catalog_lookups(catalog_store):
    card = catalog_store.get_card("card-00001")

    assert card.is_competitor
    assert card.power == 8
    assert catalog_store.get_card("missing") is None
    assert catalog_store.get_card_by_name("john cena").id == "card-00001"
    assert [c.id for c in catalog_store.get_cards_by_type("EntranceCard")] == ["card-00006"]
    assert catalog_store.get_card_types() == ["EntranceCard", "MainDeckCard", "SingleCompetitorCard"]
    assert catalog_store.get_divisions() == ["Men's"]
    assert catalog_store.get_release_sets() == ["Core"]
    assert catalog_store.get_related_finishes("card-00001") == ["card-00002"]
    assert catalog_store.get_related_cards("card-00001") == []
    assert catalog_store.get_last_synced_at() == 1_700_000_000_000


def test_card_tag_list():
    assert make_card(1, tags="Heel, Champion ,,").tag_list == ["Heel", "Champion"]
    assert make_card(2).tag_list == []


# --- transactions ---


def test_run_in_transaction_rolls_back_on_error(catalog_store):
    def fail(db):
        db.execute("DELETE FROM cards")
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        catalog_store.run_in_transaction(fail)

    assert catalog_store.get_card_count() == 6
    assert not catalog_store.db.in_transaction


def test_attach_is_read_only(catalog_store, tmp_path):
    other = create_database(tmp_path / "other.db", [make_card(99)])

    with catalog_store.attached(other, "other"):
        assert catalog_store.db.execute("SELECT COUNT(*) FROM other.cards").fetchone()[0] == 1
        with pytest.raises(sqlite3.OperationalError):
            catalog_store.db.execute("DELETE FROM other.cards")


class _FailFirstDetach:
    """Connection wrapper whose first DETACH fails as an interrupted statement would."""

    def __init__(self, db):
        self._db = db
        self.failures = 1

    def execute(self, sql, *args):
        if sql.startswith("DETACH") and self.failures:
            self.failures -= 1
            raise sqlite3.OperationalError("interrupted")
        return self._db.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._db, name)


def test_detach_is_retried_and_keeps_original_error(catalog_store, tmp_path):
    other = create_database(tmp_path / "other.db", [make_card(99)])
    real_db = catalog_store._db
    catalog_store._db = _FailFirstDetach(real_db)
    try:
        with pytest.raises(ValueError, match="merge failed"):
            with catalog_store.attached(other, "payload"):
                raise ValueError("merge failed")
    finally:
        catalog_store._db = real_db

    names = [row["name"] for row in catalog_store.db.execute("PRAGMA database_list")]
    assert "payload" not in names
    with catalog_store.attached(other, "payload"):
        assert catalog_store.db.execute("SELECT COUNT(*) FROM payload.cards").fetchone()[0] == 1


# --- folders ---


def test_default_folders_replace_legacy_ones(tmp_path):
    col = CardCollection.open(tmp_path / "user_cards.db")
    col.save_folder(Folder(id="favorites", name="Favorites", is_default=True))

    col.ensure_default_folders()
    col.ensure_default_folders()

    assert [f.id for f in col.get_all_folders()] == ["owned", "wanted", "trade"]
    assert all(f.is_default for f in col.get_all_folders())
    col.close()


def test_folder_card_quantities(store):
    store.add_card_to_folder("card-00001", "owned", quantity=2)
    store.add_card_to_folder("card-00001", "owned", quantity=3)

    assert store.get_quantity("card-00001", "owned") == 3
    assert store.get_folder_card_count("owned") == 1

    store.update_quantity("card-00001", "owned", 5)
    assert store.get_quantity("card-00001", "owned") == 5

    store.remove_card_from_folder("card-00001", "owned")
    assert not store.is_card_in_folder("card-00001", "owned")
    assert store.get_quantity("card-00001", "owned") is None


def test_delete_folder_cascades(store):
    folder = Folder(name="Binder")
    store.save_folder(folder)
    store.add_card_to_folder("card-00001", folder.id)

    store.delete_folder(folder.id)

    assert store.get_folder(folder.id) is None
    assert store.get_folder_cards(folder.id) == []


# --- decks ---


@pytest.fixture
def deck(store):
    d = Deck(folder_id="singles", name="Cena Singles", spectacle_type=SpectacleType.NEWMAN)
    store.save_deck(d)
    return d


def test_default_deck_folders_cannot_be_deleted(store):
    assert [f.id for f in store.get_all_deck_folders()] == ["singles", "tornado", "trios", "tag"]

    with pytest.raises(StorageError) as exc_info:
        store.delete_deck_folder("singles")

    assert exc_info.value.kind == StorageErrorKind.DEFAULT_FOLDER


def test_delete_custom_deck_folder_cascades(store):
    folder = DeckFolder(name="Experiments")
    store.save_deck_folder(folder)
    deck = Deck(folder_id=folder.id, name="Test")
    store.save_deck(deck)
    store.set_entrance(deck.id, "card-00006")

    store.delete_deck_folder(folder.id)

    assert store.get_deck(deck.id) is None
    assert store.get_deck_cards(deck.id) == []


def test_deck_round_trip(store, deck):
    loaded = store.get_deck(deck.id)

    assert loaded == deck
    assert loaded.spectacle_type == SpectacleType.NEWMAN
    assert [d.id for d in store.get_decks_in_folder("singles")] == [deck.id]


@pytest.mark.parametrize("slot", [0, 31, -1])
def test_deck_slot_out_of_range(store, deck, slot):
    with pytest.raises(InvalidSlotError) as exc_info:
        store.set_deck_card(deck.id, "card-00002", slot)

    assert exc_info.value.kind == StorageErrorKind.INVALID_SLOT
    assert store.get_deck_card_count(deck.id) == 0


def test_deck_slots(store, deck):
    store.set_entrance(deck.id, "card-00006")
    store.set_competitor(deck.id, "card-00001")
    store.set_deck_card(deck.id, "card-00002", 1)
    store.set_deck_card(deck.id, "card-00003", 30)
    store.set_deck_card(deck.id, "card-00004", 30)

    assert store.add_finish(deck.id, "card-00002") == 1
    assert store.add_finish(deck.id, "card-00003") == 2
    assert store.add_alternate(deck.id, "card-00004") == 1

    cards = {(c.slot_type, c.slot_number): c.card_uuid for c in store.get_deck_cards(deck.id)}
    assert cards[(DeckSlotType.DECK, 30)] == "card-00004"
    assert cards[(DeckSlotType.ENTRANCE, 0)] == "card-00006"
    assert store.get_deck_card_count(deck.id) == 7
    assert store.get_decks_with_card_count("singles")[0].card_count == 7

    store.remove_card_from_deck(deck.id, DeckSlotType.FINISH, 1)
    assert store.get_deck_card_count(deck.id) == 6

    store.clear_deck(deck.id)
    assert store.get_deck_card_count(deck.id) == 0


def test_deck_edits_touch_modified_time(store):
    deck = Deck(folder_id="singles", name="Old", created_at=0, modified_at=0)
    store.save_deck(deck)

    store.set_deck_card(deck.id, "card-00002", 5)

    assert store.get_deck(deck.id).modified_at > 0


def test_delete_deck_cascades(store, deck):
    store.set_entrance(deck.id, "card-00006")

    store.delete_deck(deck.id)

    assert store.get_deck(deck.id) is None
    assert store.get_deck_cards(deck.id) == []
