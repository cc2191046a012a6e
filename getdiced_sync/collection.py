"""
CardCollection - the local SQLite store behind catalog and image sync.

The database holds two independent zones:

    catalog zone: cards, card_related_finishes, card_related_cards
                  (fully replaced by CatalogSyncClient on every update)
    user zone:    folders, folder_cards, deck_folders, decks, deck_cards
                  (user data, never named by the sync engine)

User-zone rows reference cards by db_uuid without a foreign key, so a card
dropped from a new catalog leaves its folder/deck rows in place; joins simply
stop returning them.
"""

from __future__ import annotations

import logging
import shutil
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DATABASE_FILE = "user_cards.db"
TEMPLATE_FILE = "cards_initial.db"
DEFAULT_TEMPLATE_PATH = Path(__file__).parent / "data" / TEMPLATE_FILE

MIN_DECK_SLOT = 1
MAX_DECK_SLOT = 30

CARD_COLUMNS = (
    "db_uuid",
    "name",
    "card_type",
    "rules_text",
    "errata_text",
    "is_banned",
    "release_set",
    "srg_url",
    "srgpc_url",
    "comments",
    "tags",
    "power",
    "agility",
    "strike",
    "submission",
    "grapple",
    "technique",
    "division",
    "gender",
    "deck_card_number",
    "atk_type",
    "play_order",
    "synced_at",
)

# Catalog tables and the columns copied for each during a merge.
CATALOG_TABLES: dict[str, tuple[str, ...]] = {
    "cards": CARD_COLUMNS,
    "card_related_finishes": ("card_uuid", "finish_uuid"),
    "card_related_cards": ("card_uuid", "related_uuid"),
}
# Dependents first.
CATALOG_DELETE_ORDER = ("card_related_finishes", "card_related_cards", "cards")
CATALOG_INSERT_ORDER = ("cards", "card_related_finishes", "card_related_cards")

SCHEMA = """
CREATE TABLE IF NOT EXISTS cards (
    db_uuid TEXT NOT NULL PRIMARY KEY,
    name TEXT NOT NULL,
    card_type TEXT NOT NULL,
    rules_text TEXT,
    errata_text TEXT,
    is_banned INTEGER NOT NULL DEFAULT 0,
    release_set TEXT,
    srg_url TEXT,
    srgpc_url TEXT,
    comments TEXT,
    tags TEXT,
    power INTEGER,
    agility INTEGER,
    strike INTEGER,
    submission INTEGER,
    grapple INTEGER,
    technique INTEGER,
    division TEXT,
    gender TEXT,
    deck_card_number INTEGER,
    atk_type TEXT,
    play_order TEXT,
    synced_at INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_cards_name ON cards (name);
CREATE INDEX IF NOT EXISTS idx_cards_type ON cards (card_type);

CREATE TABLE IF NOT EXISTS card_related_finishes (
    card_uuid TEXT NOT NULL,
    finish_uuid TEXT NOT NULL,
    PRIMARY KEY (card_uuid, finish_uuid)
);

CREATE TABLE IF NOT EXISTS card_related_cards (
    card_uuid TEXT NOT NULL,
    related_uuid TEXT NOT NULL,
    PRIMARY KEY (card_uuid, related_uuid)
);

CREATE TABLE IF NOT EXISTS folders (
    id TEXT NOT NULL PRIMARY KEY,
    name TEXT NOT NULL,
    is_default INTEGER NOT NULL DEFAULT 0,
    display_order INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS folder_cards (
    folder_id TEXT NOT NULL REFERENCES folders (id) ON DELETE CASCADE,
    card_uuid TEXT NOT NULL,
    quantity INTEGER NOT NULL DEFAULT 1,
    added_at INTEGER NOT NULL,
    PRIMARY KEY (folder_id, card_uuid)
);
CREATE INDEX IF NOT EXISTS idx_folder_cards_card ON folder_cards (card_uuid);

CREATE TABLE IF NOT EXISTS deck_folders (
    id TEXT NOT NULL PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    is_default INTEGER NOT NULL DEFAULT 0,
    display_order INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS decks (
    id TEXT NOT NULL PRIMARY KEY,
    folder_id TEXT NOT NULL REFERENCES deck_folders (id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    spectacle_type TEXT NOT NULL DEFAULT 'VALIANT',
    created_at INTEGER NOT NULL,
    modified_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS deck_cards (
    deck_id TEXT NOT NULL REFERENCES decks (id) ON DELETE CASCADE,
    card_uuid TEXT NOT NULL,
    slot_type TEXT NOT NULL,
    slot_number INTEGER NOT NULL,
    PRIMARY KEY (deck_id, slot_type, slot_number)
);
"""

DEFAULT_FOLDERS = (("owned", "Owned", 0), ("wanted", "Wanted", 1), ("trade", "Trade", 2))
LEGACY_FOLDERS = ("favorites", "for_trade")
DEFAULT_DECK_FOLDERS = (
    ("singles", "Singles", 0),
    ("tornado", "Tornado", 1),
    ("trios", "Trios", 2),
    ("tag", "Tag", 3),
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return str(uuid.uuid4()).upper()


# --- Exceptions ---


class StorageErrorKind(Enum):
    NOT_FOUND = "not_found"
    CORRUPT = "corrupt"
    PERMISSION_DENIED = "permission_denied"
    BUNDLE_MISSING = "bundle_missing"
    INVALID_SLOT = "invalid_slot"
    UNAVAILABLE = "unavailable"
    DEFAULT_FOLDER = "default_folder"


class StorageError(Exception):
    def __init__(
        self,
        message: str,
        kind: StorageErrorKind = StorageErrorKind.UNAVAILABLE,
        underlying: Optional[BaseException] = None,
    ):
        self.kind, self.underlying = kind, underlying
        super().__init__(message)


class BundleMissingError(StorageError):
    def __init__(self, template_path: Path):
        self.template_path = template_path
        super().__init__(
            f"Bundled database template not found: {template_path}",
            StorageErrorKind.BUNDLE_MISSING,
        )


class InvalidSlotError(StorageError):
    def __init__(self, slot_number: int):
        self.slot_number = slot_number
        super().__init__(
            f"Invalid deck card slot number {slot_number} "
            f"(must be {MIN_DECK_SLOT}-{MAX_DECK_SLOT})",
            StorageErrorKind.INVALID_SLOT,
        )


# --- Models ---


class CardType(Enum):
    ENTRANCE = "EntranceCard"
    SINGLE_COMPETITOR = "SingleCompetitorCard"
    TORNADO_COMPETITOR = "TornadoCompetitorCard"
    TRIO_COMPETITOR = "TrioCompetitorCard"
    MAIN_DECK = "MainDeckCard"
    SPECTACLE = "SpectacleCard"
    CROWD_METER = "CrowdMeterCard"


class SpectacleType(Enum):
    NEWMAN = "NEWMAN"
    VALIANT = "VALIANT"

    @classmethod
    def parse(cls, value: Optional[str]) -> SpectacleType:
        try:
            return cls((value or "").upper())
        except ValueError:
            return cls.VALIANT


class DeckSlotType(Enum):
    ENTRANCE = "ENTRANCE"
    COMPETITOR = "COMPETITOR"
    DECK = "DECK"  # slots 1-30
    FINISH = "FINISH"
    ALTERNATE = "ALTERNATE"

    @classmethod
    def parse(cls, value: Optional[str]) -> DeckSlotType:
        try:
            return cls((value or "").upper())
        except ValueError:
            return cls.DECK


@dataclass
class Card:
    """A catalog card. Stat fields are only set for competitors, deck fields for main-deck cards."""

    id: str
    name: str
    card_type: str
    rules_text: Optional[str] = None
    errata_text: Optional[str] = None
    is_banned: bool = False
    release_set: Optional[str] = None
    srg_url: Optional[str] = None
    srgpc_url: Optional[str] = None
    comments: Optional[str] = None
    tags: Optional[str] = None
    power: Optional[int] = None
    agility: Optional[int] = None
    strike: Optional[int] = None
    submission: Optional[int] = None
    grapple: Optional[int] = None
    technique: Optional[int] = None
    division: Optional[str] = None
    gender: Optional[str] = None
    deck_card_number: Optional[int] = None
    atk_type: Optional[str] = None
    play_order: Optional[str] = None
    synced_at: int = field(default_factory=_now_ms)

    @property
    def is_competitor(self) -> bool:
        return "Competitor" in self.card_type

    @property
    def is_main_deck(self) -> bool:
        return self.card_type == CardType.MAIN_DECK.value

    @property
    def tag_list(self) -> list[str]:
        if not self.tags:
            return []
        return [t.strip() for t in self.tags.split(",") if t.strip()]

    def to_row(self) -> tuple:
        values = [getattr(self, col) for col in CARD_COLUMNS[1:]]
        values[CARD_COLUMNS.index("is_banned") - 1] = int(self.is_banned)
        return (self.id, *values)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Card:
        d = {col: row[col] for col in CARD_COLUMNS}
        d["id"] = d.pop("db_uuid")
        d["is_banned"] = bool(d["is_banned"])
        d["synced_at"] = d["synced_at"] or 0
        return cls(**d)


@dataclass
class Folder:
    name: str
    id: str = field(default_factory=_new_id)
    is_default: bool = False
    display_order: int = 0
    created_at: int = field(default_factory=_now_ms)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Folder:
        return cls(
            id=row["id"],
            name=row["name"],
            is_default=bool(row["is_default"]),
            display_order=row["display_order"],
            created_at=row["created_at"],
        )


@dataclass
class FolderCard:
    folder_id: str
    card_uuid: str
    quantity: int = 1
    added_at: int = field(default_factory=_now_ms)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FolderCard:
        return cls(row["folder_id"], row["card_uuid"], row["quantity"], row["added_at"])


@dataclass
class FolderCardWithDetails:
    card: Card
    quantity: int
    added_at: int


@dataclass
class DeckFolder:
    name: str
    id: str = field(default_factory=_new_id)
    is_default: bool = False
    display_order: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DeckFolder:
        return cls(
            id=row["id"],
            name=row["name"],
            is_default=bool(row["is_default"]),
            display_order=row["display_order"],
        )


@dataclass
class Deck:
    folder_id: str
    name: str
    id: str = field(default_factory=_new_id)
    spectacle_type: SpectacleType = SpectacleType.VALIANT
    created_at: int = field(default_factory=_now_ms)
    modified_at: int = field(default_factory=_now_ms)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Deck:
        return cls(
            id=row["id"],
            folder_id=row["folder_id"],
            name=row["name"],
            spectacle_type=SpectacleType.parse(row["spectacle_type"]),
            created_at=row["created_at"],
            modified_at=row["modified_at"],
        )


@dataclass
class DeckCard:
    deck_id: str
    card_uuid: str
    slot_type: DeckSlotType
    slot_number: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> DeckCard:
        return cls(
            row["deck_id"],
            row["card_uuid"],
            DeckSlotType.parse(row["slot_type"]),
            row["slot_number"],
        )


@dataclass
class DeckWithCardCount:
    deck: Deck
    card_count: int


@dataclass
class DeckCardWithDetails:
    card: Card
    slot_type: DeckSlotType
    slot_number: int


# -------------------------------------------------------------------------
# Search builder
# -------------------------------------------------------------------------


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class CardSearch:
    """
    Parameterized catalog search.

    Every filter is optional and independent; values are always bound as
    parameters, including the LIKE pattern built from ``query``.
    """

    query: Optional[str] = None
    card_type: Optional[str] = None
    atk_type: Optional[str] = None
    play_order: Optional[str] = None
    division: Optional[str] = None
    release_set: Optional[str] = None
    gender: Optional[str] = None
    is_banned: Optional[bool] = None
    prefix: bool = False
    match_rules_text: bool = False
    limit: int = 100

    _EQUALITY_FILTERS = (
        "card_type",
        "atk_type",
        "play_order",
        "division",
        "release_set",
        "gender",
    )

    def where(self) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []

        if self.query:
            escaped = _escape_like(self.query)
            pattern = f"{escaped}%" if self.prefix else f"%{escaped}%"
            if self.match_rules_text:
                clauses.append(
                    "(name LIKE ? ESCAPE '\\' OR rules_text LIKE ? ESCAPE '\\')"
                )
                params += [pattern, pattern]
            else:
                clauses.append("name LIKE ? ESCAPE '\\'")
                params.append(pattern)

        for column in self._EQUALITY_FILTERS:
            value = getattr(self, column)
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)

        if self.is_banned is not None:
            clauses.append("is_banned = ?")
            params.append(int(self.is_banned))

        return (" WHERE " + " AND ".join(clauses)) if clauses else "", params

    def to_sql(self) -> tuple[str, list[Any]]:
        if self.limit < 0:
            raise ValueError(f"limit must be non-negative, got {self.limit}")
        where, params = self.where()
        sql = f"SELECT * FROM cards{where} ORDER BY name COLLATE NOCASE, db_uuid LIMIT ?"
        return sql, params + [self.limit]


# -------------------------------------------------------------------------
# Database helpers
# -------------------------------------------------------------------------


def _connect_db(path: Path) -> sqlite3.Connection:
    """Open ``path`` in autocommit mode; transactions are explicit."""
    db = sqlite3.connect(
        path.resolve().as_uri(),
        uri=True,
        isolation_level=None,
        check_same_thread=False,
    )
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA foreign_keys = ON")
    return db


def create_database(
    path: str | Path,
    cards: Iterable[Card] = (),
    related_finishes: Iterable[tuple[str, str]] = (),
    related_cards: Iterable[tuple[str, str]] = (),
) -> Path:
    """
    Write a database with the full schema and the given catalog rows.

    Used to build the bundled template and catalog payloads; an existing
    file at ``path`` is replaced.
    """
    path = Path(path)
    if path.exists():
        path.unlink()
    db = sqlite3.connect(str(path))
    try:
        db.executescript(SCHEMA)
        placeholders = ",".join("?" * len(CARD_COLUMNS))
        db.executemany(
            f"INSERT INTO cards ({','.join(CARD_COLUMNS)}) VALUES ({placeholders})",
            [card.to_row() for card in cards],
        )
        db.executemany(
            "INSERT INTO card_related_finishes (card_uuid, finish_uuid) VALUES (?, ?)",
            list(related_finishes),
        )
        db.executemany(
            "INSERT INTO card_related_cards (card_uuid, related_uuid) VALUES (?, ?)",
            list(related_cards),
        )
        db.commit()
    finally:
        db.close()
    return path


class CardCollection:
    """
    The local card store.

    Usage:
        col = CardCollection.open(data_dir / "user_cards.db", template_path)
        col.search_cards("cena", card_type="SingleCompetitorCard", limit=50)
        col.add_card_to_folder(card_id, "owned", quantity=2)

    Catalog tables are only written through run_in_transaction(), which
    hands the raw connection to the caller (the sync engine owns merge
    sequencing). The connection is shared between threads and serialized
    by an internal lock.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._db: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

        try:
            self._db = _connect_db(self.db_path)
            # Forces SQLite to read the header.
            self._db.execute("PRAGMA schema_version").fetchone()
        except sqlite3.DatabaseError as e:
            self.close()
            raise self._open_error(e) from e

    @classmethod
    def open(
        cls, path: str | Path, template_path: Optional[str | Path] = None
    ) -> CardCollection:
        """
        Open the store at ``path``, seeding it from the bundled template on
        first run, and bring its schema up to date.

        The shipped ``data/cards_initial.db`` carries the full schema with an
        empty catalog; a fresh install is at catalog version 0 and the first
        CatalogSyncClient.sync_database() fills it. Pass ``template_path`` to
        seed from a snapshot instead.
        """
        path = Path(path)
        template = Path(template_path) if template_path else DEFAULT_TEMPLATE_PATH

        if not path.parent.is_dir():
            raise StorageError(
                f"Database directory does not exist: {path.parent}",
                StorageErrorKind.NOT_FOUND,
            )

        if not path.exists():
            if not template.is_file():
                raise BundleMissingError(template)
            try:
                shutil.copyfile(template, path)
            except PermissionError as e:
                raise StorageError(
                    f"Cannot create database at {path}",
                    StorageErrorKind.PERMISSION_DENIED,
                    e,
                ) from e
            logger.info("Database initialized from template %s", template)

        col = cls(path)
        try:
            col.ensure_schema()
        except sqlite3.DatabaseError as e:
            col.close()
            raise col._open_error(e) from e
        return col

    def _open_error(self, e: sqlite3.DatabaseError) -> StorageError:
        msg = str(e).lower()
        if isinstance(e, sqlite3.OperationalError):
            if "readonly" in msg or "permission" in msg or (
                self.db_path.exists() and "unable to open" in msg
            ):
                kind = StorageErrorKind.PERMISSION_DENIED
            else:
                kind = StorageErrorKind.NOT_FOUND
        else:
            kind = StorageErrorKind.CORRUPT
        return StorageError(f"Cannot open database {self.db_path}: {e}", kind, e)

    def ensure_schema(self) -> None:
        """Create any missing tables and indexes. Safe on every startup."""
        with self._lock:
            self.db.executescript(SCHEMA)

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise StorageError(
                "Database connection not established", StorageErrorKind.UNAVAILABLE
            )
        return self._db

    @property
    def path(self) -> Path:
        return self.db_path

    def close(self):
        with self._lock:
            if self._db is not None:
                self._db.close()
                self._db = None

    def __enter__(self) -> CardCollection:
        return self

    def __exit__(self, *exc):
        self.close()

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.db.execute(sql, tuple(params)).fetchall()

    def _query_one(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.db.execute(sql, tuple(params)).fetchone()

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        with self._lock:
            return self.db.execute(sql, tuple(params)).rowcount

    def count(self, table: str) -> int:
        if table not in CATALOG_TABLES and table not in (
            "folders",
            "folder_cards",
            "deck_folders",
            "decks",
            "deck_cards",
        ):
            raise ValueError(f"Unknown table: {table}")
        return self._query_one(f"SELECT COUNT(*) FROM {table}")[0]

    # -------------------------------------------------------------------------
    # Transaction Management
    # -------------------------------------------------------------------------

    def begin_transaction(self) -> None:
        """Begin a write transaction, taking the database write lock now."""
        self.db.execute("BEGIN IMMEDIATE")

    def commit_transaction(self) -> None:
        self.db.commit()

    def rollback_transaction(self) -> None:
        self.db.rollback()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside BEGIN IMMEDIATE; commit or roll back on exit."""
        with self._lock:
            self.begin_transaction()
            try:
                yield self.db
                self.commit_transaction()
            except BaseException:
                if self.db.in_transaction:
                    self.rollback_transaction()
                raise

    def run_in_transaction(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """
        Run ``fn(connection)`` as one atomic unit.

        Any exception raised by ``fn`` (or by COMMIT) rolls back every
        statement it issued and is re-raised unchanged.
        """
        with self.transaction() as db:
            return fn(db)

    @contextmanager
    def attached(self, path: str | Path, alias: str = "payload") -> Iterator[str]:
        """
        Attach another database file read-only under ``alias``.

        SQLite refuses ATTACH/DETACH inside a transaction, so enter this
        before run_in_transaction(); the DETACH happens on exit, after the
        transaction has committed or rolled back.
        """
        if not alias.isidentifier():
            raise ValueError(f"Invalid schema alias: {alias!r}")
        uri = Path(path).resolve().as_uri() + "?mode=ro"
        with self._lock:
            self.db.execute(f"ATTACH DATABASE ? AS {alias}", (uri,))
            try:
                yield alias
            finally:
                self._detach(alias)

    def _detach(self, alias: str) -> None:
        # An interrupt aimed at the merge can land on DETACH; one retry
        # keeps the alias free for the next ATTACH.
        try:
            self.db.execute(f"DETACH DATABASE {alias}")
        except sqlite3.Error as e:
            logger.warning("DETACH %s failed, retrying: %s", alias, e)
            self.db.execute(f"DETACH DATABASE {alias}")

    # -------------------------------------------------------------------------
    # Catalog Reads
    # -------------------------------------------------------------------------

    def get_card(self, card_id: str) -> Optional[Card]:
        row = self._query_one("SELECT * FROM cards WHERE db_uuid = ?", (card_id,))
        return Card.from_row(row) if row else None

    def get_card_by_name(self, name: str) -> Optional[Card]:
        """Exact name match, case-insensitive."""
        row = self._query_one(
            "SELECT * FROM cards WHERE name = ? COLLATE NOCASE ORDER BY db_uuid LIMIT 1",
            (name,),
        )
        return Card.from_row(row) if row else None

    def search(self, search: CardSearch) -> list[Card]:
        sql, params = search.to_sql()
        return [Card.from_row(row) for row in self._query(sql, params)]

    def search_cards(
        self, query: Optional[str] = None, *, limit: int = 100, **filters: Any
    ) -> list[Card]:
        """
        Search the catalog by name with optional filters.

        Filters: card_type, atk_type, play_order, division, release_set,
        gender, is_banned, prefix, match_rules_text. Results are ordered by
        name and capped at ``limit``.
        """
        return self.search(CardSearch(query=query, limit=limit, **filters))

    def get_cards_by_type(self, card_type: str) -> list[Card]:
        return [
            Card.from_row(row)
            for row in self._query(
                "SELECT * FROM cards WHERE card_type = ? ORDER BY name COLLATE NOCASE, db_uuid",
                (card_type,),
            )
        ]

    def _distinct(self, column: str) -> list[str]:
        return [
            row[0]
            for row in self._query(
                f"SELECT DISTINCT {column} FROM cards WHERE {column} IS NOT NULL ORDER BY {column}"
            )
        ]

    def get_card_types(self) -> list[str]:
        return self._distinct("card_type")

    def get_divisions(self) -> list[str]:
        return self._distinct("division")

    def get_release_sets(self) -> list[str]:
        return self._distinct("release_set")

    def get_card_count(self) -> int:
        return self.count("cards")

    def get_last_synced_at(self) -> Optional[int]:
        row = self._query_one("SELECT MAX(synced_at) FROM cards")
        return row[0] if row else None

    def get_related_finishes(self, card_id: str) -> list[str]:
        return [
            row[0]
            for row in self._query(
                "SELECT finish_uuid FROM card_related_finishes WHERE card_uuid = ? ORDER BY finish_uuid",
                (card_id,),
            )
        ]

    def get_related_cards(self, card_id: str) -> list[str]:
        return [
            row[0]
            for row in self._query(
                "SELECT related_uuid FROM card_related_cards WHERE card_uuid = ? ORDER BY related_uuid",
                (card_id,),
            )
        ]

    # -------------------------------------------------------------------------
    # Folders
    # -------------------------------------------------------------------------

    def get_all_folders(self) -> list[Folder]:
        return [
            Folder.from_row(row)
            for row in self._query("SELECT * FROM folders ORDER BY display_order, created_at")
        ]

    def get_folder(self, folder_id: str) -> Optional[Folder]:
        row = self._query_one("SELECT * FROM folders WHERE id = ?", (folder_id,))
        return Folder.from_row(row) if row else None

    def save_folder(self, folder: Folder) -> None:
        self._execute(
            """INSERT OR REPLACE INTO folders (id, name, is_default, display_order, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                folder.id,
                folder.name,
                int(folder.is_default),
                folder.display_order,
                folder.created_at,
            ),
        )

    def delete_folder(self, folder_id: str) -> None:
        """Delete a folder; its folder_cards rows cascade."""
        self._execute("DELETE FROM folders WHERE id = ?", (folder_id,))

    def ensure_default_folders(self) -> None:
        """Create Owned/Wanted/Trade if missing and drop legacy default folders."""
        for folder_id, name, order in DEFAULT_FOLDERS:
            if self.get_folder(folder_id) is None:
                self.save_folder(
                    Folder(id=folder_id, name=name, is_default=True, display_order=order)
                )
                logger.info("Created default folder: %s", name)
        for folder_id in LEGACY_FOLDERS:
            if self.get_folder(folder_id) is not None:
                self.delete_folder(folder_id)
                logger.info("Removed legacy folder: %s", folder_id)

    # -------------------------------------------------------------------------
    # Folder Cards
    # -------------------------------------------------------------------------

    def get_cards_in_folder(self, folder_id: str) -> list[FolderCardWithDetails]:
        """Cards in a folder with quantities; rows whose card left the catalog are skipped."""
        rows = self._query(
            """SELECT c.*, fc.quantity, fc.added_at
               FROM cards c
               INNER JOIN folder_cards fc ON c.db_uuid = fc.card_uuid
               WHERE fc.folder_id = ?
               ORDER BY c.name COLLATE NOCASE, c.db_uuid""",
            (folder_id,),
        )
        return [
            FolderCardWithDetails(Card.from_row(row), row["quantity"], row["added_at"])
            for row in rows
        ]

    def get_folder_cards(self, folder_id: Optional[str] = None) -> list[FolderCard]:
        """Raw folder_cards rows, including ones that reference unknown cards."""
        if folder_id is None:
            rows = self._query("SELECT * FROM folder_cards ORDER BY folder_id, card_uuid")
        else:
            rows = self._query(
                "SELECT * FROM folder_cards WHERE folder_id = ? ORDER BY card_uuid",
                (folder_id,),
            )
        return [FolderCard.from_row(row) for row in rows]

    def get_folder_card_count(self, folder_id: str) -> int:
        return self._query_one(
            "SELECT COUNT(*) FROM folder_cards WHERE folder_id = ?", (folder_id,)
        )[0]

    def is_card_in_folder(self, card_uuid: str, folder_id: str) -> bool:
        return self.get_quantity(card_uuid, folder_id) is not None

    def get_quantity(self, card_uuid: str, folder_id: str) -> Optional[int]:
        row = self._query_one(
            "SELECT quantity FROM folder_cards WHERE folder_id = ? AND card_uuid = ?",
            (folder_id, card_uuid),
        )
        return row["quantity"] if row else None

    def add_card_to_folder(self, card_uuid: str, folder_id: str, quantity: int = 1) -> None:
        """Insert the card into the folder, replacing any existing quantity."""
        self._execute(
            """INSERT OR REPLACE INTO folder_cards (folder_id, card_uuid, quantity, added_at)
               VALUES (?, ?, ?, ?)""",
            (folder_id, card_uuid, quantity, _now_ms()),
        )

    def update_quantity(self, card_uuid: str, folder_id: str, quantity: int) -> None:
        self._execute(
            "UPDATE folder_cards SET quantity = ? WHERE folder_id = ? AND card_uuid = ?",
            (quantity, folder_id, card_uuid),
        )

    def remove_card_from_folder(self, card_uuid: str, folder_id: str) -> None:
        self._execute(
            "DELETE FROM folder_cards WHERE folder_id = ? AND card_uuid = ?",
            (folder_id, card_uuid),
        )

    # -------------------------------------------------------------------------
    # Deck Folders
    # -------------------------------------------------------------------------

    def get_all_deck_folders(self) -> list[DeckFolder]:
        return [
            DeckFolder.from_row(row)
            for row in self._query("SELECT * FROM deck_folders ORDER BY display_order, name")
        ]

    def get_deck_folder(self, folder_id: str) -> Optional[DeckFolder]:
        row = self._query_one("SELECT * FROM deck_folders WHERE id = ?", (folder_id,))
        return DeckFolder.from_row(row) if row else None

    def save_deck_folder(self, folder: DeckFolder) -> None:
        self._execute(
            """INSERT OR REPLACE INTO deck_folders (id, name, is_default, display_order)
               VALUES (?, ?, ?, ?)""",
            (folder.id, folder.name, int(folder.is_default), folder.display_order),
        )

    def delete_deck_folder(self, folder_id: str) -> None:
        """Delete a custom deck folder and, by cascade, its decks."""
        folder = self.get_deck_folder(folder_id)
        if folder is not None and folder.is_default:
            raise StorageError(
                "Cannot delete default folders", StorageErrorKind.DEFAULT_FOLDER
            )
        self._execute("DELETE FROM deck_folders WHERE id = ?", (folder_id,))

    def ensure_default_deck_folders(self) -> None:
        for folder_id, name, order in DEFAULT_DECK_FOLDERS:
            if self.get_deck_folder(folder_id) is None:
                self.save_deck_folder(
                    DeckFolder(id=folder_id, name=name, is_default=True, display_order=order)
                )
                logger.info("Created default deck folder: %s", name)

    # -------------------------------------------------------------------------
    # Decks
    # -------------------------------------------------------------------------

    def get_decks_in_folder(self, folder_id: str) -> list[Deck]:
        return [
            Deck.from_row(row)
            for row in self._query(
                "SELECT * FROM decks WHERE folder_id = ? ORDER BY modified_at DESC, id",
                (folder_id,),
            )
        ]

    def get_decks_with_card_count(self, folder_id: str) -> list[DeckWithCardCount]:
        rows = self._query(
            """SELECT d.*, COUNT(dc.deck_id) AS card_count
               FROM decks d
               LEFT JOIN deck_cards dc ON dc.deck_id = d.id
               WHERE d.folder_id = ?
               GROUP BY d.id
               ORDER BY d.modified_at DESC, d.id""",
            (folder_id,),
        )
        return [DeckWithCardCount(Deck.from_row(row), row["card_count"]) for row in rows]

    def get_deck(self, deck_id: str) -> Optional[Deck]:
        row = self._query_one("SELECT * FROM decks WHERE id = ?", (deck_id,))
        return Deck.from_row(row) if row else None

    def save_deck(self, deck: Deck) -> None:
        self._execute(
            """INSERT OR REPLACE INTO decks
               (id, folder_id, name, spectacle_type, created_at, modified_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                deck.id,
                deck.folder_id,
                deck.name,
                deck.spectacle_type.value,
                deck.created_at,
                deck.modified_at,
            ),
        )

    def update_deck_modified_time(self, deck_id: str) -> None:
        self._execute(
            "UPDATE decks SET modified_at = ? WHERE id = ?", (_now_ms(), deck_id)
        )

    def delete_deck(self, deck_id: str) -> None:
        """Delete a deck; its deck_cards rows cascade."""
        self._execute("DELETE FROM decks WHERE id = ?", (deck_id,))

    # -------------------------------------------------------------------------
    # Deck Cards
    # -------------------------------------------------------------------------

    def get_cards_in_deck(self, deck_id: str) -> list[DeckCardWithDetails]:
        rows = self._query(
            """SELECT c.*, dc.slot_type, dc.slot_number
               FROM deck_cards dc
               INNER JOIN cards c ON c.db_uuid = dc.card_uuid
               WHERE dc.deck_id = ?
               ORDER BY dc.slot_type, dc.slot_number""",
            (deck_id,),
        )
        return [
            DeckCardWithDetails(
                Card.from_row(row), DeckSlotType.parse(row["slot_type"]), row["slot_number"]
            )
            for row in rows
        ]

    def get_deck_cards(self, deck_id: str) -> list[DeckCard]:
        """Raw deck_cards rows, including ones that reference unknown cards."""
        return [
            DeckCard.from_row(row)
            for row in self._query(
                "SELECT * FROM deck_cards WHERE deck_id = ? ORDER BY slot_type, slot_number",
                (deck_id,),
            )
        ]

    def get_deck_card_count(self, deck_id: str) -> int:
        return self._query_one(
            "SELECT COUNT(*) FROM deck_cards WHERE deck_id = ?", (deck_id,)
        )[0]

    def _write_deck_slot(
        self, deck_id: str, card_uuid: str, slot_type: DeckSlotType, slot_number: int
    ) -> None:
        with self.transaction() as db:
            db.execute(
                """INSERT OR REPLACE INTO deck_cards (deck_id, card_uuid, slot_type, slot_number)
                   VALUES (?, ?, ?, ?)""",
                (deck_id, card_uuid, slot_type.value, slot_number),
            )
            db.execute(
                "UPDATE decks SET modified_at = ? WHERE id = ?", (_now_ms(), deck_id)
            )

    def _append_deck_slot(
        self, deck_id: str, card_uuid: str, slot_type: DeckSlotType
    ) -> int:
        with self.transaction() as db:
            max_slot = db.execute(
                "SELECT MAX(slot_number) FROM deck_cards WHERE deck_id = ? AND slot_type = ?",
                (deck_id, slot_type.value),
            ).fetchone()[0]
            slot_number = (max_slot or 0) + 1
            db.execute(
                """INSERT INTO deck_cards (deck_id, card_uuid, slot_type, slot_number)
                   VALUES (?, ?, ?, ?)""",
                (deck_id, card_uuid, slot_type.value, slot_number),
            )
            db.execute(
                "UPDATE decks SET modified_at = ? WHERE id = ?", (_now_ms(), deck_id)
            )
        return slot_number

    def set_entrance(self, deck_id: str, card_uuid: str) -> None:
        self._write_deck_slot(deck_id, card_uuid, DeckSlotType.ENTRANCE, 0)

    def set_competitor(self, deck_id: str, card_uuid: str) -> None:
        self._write_deck_slot(deck_id, card_uuid, DeckSlotType.COMPETITOR, 0)

    def set_deck_card(self, deck_id: str, card_uuid: str, slot_number: int) -> None:
        """Place a card in main-deck slot 1-30, replacing whatever was there."""
        if not MIN_DECK_SLOT <= slot_number <= MAX_DECK_SLOT:
            raise InvalidSlotError(slot_number)
        self._write_deck_slot(deck_id, card_uuid, DeckSlotType.DECK, slot_number)

    def add_finish(self, deck_id: str, card_uuid: str) -> int:
        """Append a finish card; returns the slot number it was given."""
        return self._append_deck_slot(deck_id, card_uuid, DeckSlotType.FINISH)

    def add_alternate(self, deck_id: str, card_uuid: str) -> int:
        return self._append_deck_slot(deck_id, card_uuid, DeckSlotType.ALTERNATE)

    def remove_card_from_deck(
        self, deck_id: str, slot_type: DeckSlotType, slot_number: int
    ) -> None:
        with self.transaction() as db:
            db.execute(
                "DELETE FROM deck_cards WHERE deck_id = ? AND slot_type = ? AND slot_number = ?",
                (deck_id, slot_type.value, slot_number),
            )
            db.execute(
                "UPDATE decks SET modified_at = ? WHERE id = ?", (_now_ms(), deck_id)
            )

    def clear_deck(self, deck_id: str) -> None:
        with self.transaction() as db:
            db.execute("DELETE FROM deck_cards WHERE deck_id = ?", (deck_id,))
            db.execute(
                "UPDATE decks SET modified_at = ? WHERE id = ?", (_now_ms(), deck_id)
            )
