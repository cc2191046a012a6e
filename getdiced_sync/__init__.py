"""
GetDiced Sync - catalog and card image sync for the GetDiced card store.

Keeps a local SQLite card catalog and image cache in step with
get-diced.com, without touching the user's folders and decks.

Usage:
    from getdiced_sync import CardCollection, CatalogSyncClient, JsonFileSyncState

    col = CardCollection.open(data_dir / "user_cards.db")
    client = CatalogSyncClient(col, JsonFileSyncState(data_dir / "sync_state.json"))
    if client.check_for_updates().available:
        client.sync_database()

    images = ImageSyncClient(data_dir / "synced_images")
    images.sync_images()
"""

from .client import (
    # Config
    SyncConfig,
    DEFAULT_ENDPOINT,
    # Manifests & results
    CatalogManifest,
    ImageInfo,
    ImageManifest,
    UpdateCheck,
    CatalogSyncPhase,
    CatalogSyncResult,
    ImageSyncResult,
    # Exceptions
    SyncErrorKind,
    SyncError,
    HttpStatusError,
    ManifestMalformedError,
    ManifestFetchError,
    DownloadError,
    MergeError,
    # Clients
    HttpSyncClient,
    CatalogSyncClient,
    ImageSyncClient,
    # Interface
    SyncStateInterface,
)
from .collection import (
    Card,
    CardCollection,
    CardSearch,
    CardType,
    Deck,
    DeckCard,
    DeckCardWithDetails,
    DeckFolder,
    DeckSlotType,
    DeckWithCardCount,
    Folder,
    FolderCard,
    FolderCardWithDetails,
    SpectacleType,
    StorageError,
    StorageErrorKind,
    BundleMissingError,
    InvalidSlotError,
    create_database,
)
from .state import JsonFileSyncState

__all__ = [
    "SyncConfig",
    "DEFAULT_ENDPOINT",
    "CatalogManifest",
    "ImageInfo",
    "ImageManifest",
    "UpdateCheck",
    "CatalogSyncPhase",
    "CatalogSyncResult",
    "ImageSyncResult",
    "SyncErrorKind",
    "SyncError",
    "HttpStatusError",
    "ManifestMalformedError",
    "ManifestFetchError",
    "DownloadError",
    "MergeError",
    "HttpSyncClient",
    "CatalogSyncClient",
    "ImageSyncClient",
    "SyncStateInterface",
    "Card",
    "CardCollection",
    "CardSearch",
    "CardType",
    "Deck",
    "DeckCard",
    "DeckCardWithDetails",
    "DeckFolder",
    "DeckSlotType",
    "DeckWithCardCount",
    "Folder",
    "FolderCard",
    "FolderCardWithDetails",
    "SpectacleType",
    "StorageError",
    "StorageErrorKind",
    "BundleMissingError",
    "InvalidSlotError",
    "create_database",
    "JsonFileSyncState",
]

__version__ = "1.0.0"
