"""
Shared test utilities and fixtures for the sync client tests.

Network access is replaced by FakeSession, which is handed to the clients
the same way a real requests.Session would be.
"""

import hashlib
import io
import json
import os
import sqlite3
from pathlib import Path
from typing import Optional

import pytest
import requests

from .. import Card, CardCollection, JsonFileSyncState, SyncConfig, create_database

ENDPOINT = os.getenv("GETDICED_TEST_ENDPOINT", "https://get-diced.test/")


class _TruncatedStream(io.BytesIO):
    """Body that drops the connection once its bytes run out."""

    def read(self, size=-1):
        chunk = super().read(size)
        if not chunk:
            raise requests.exceptions.ChunkedEncodingError(
                "Connection broken: IncompleteRead"
            )
        return chunk


def make_response(
    body: bytes = b"", status: int = 200, url: str = "", truncated: bool = False
) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp.url = url
    resp.raw = _TruncatedStream(body) if truncated else io.BytesIO(body)
    return resp


class FakeSession:
    """Minimal stand-in for requests.Session serving canned routes."""

    def __init__(self):
        self.routes: dict[str, dict] = {}
        self.requested: list[str] = []
        self.closed = False

    def add(
        self,
        path: str,
        body: bytes = b"",
        status: int = 200,
        json_body=None,
        error: Optional[Exception] = None,
        truncated: bool = False,
    ):
        if json_body is not None:
            body = json.dumps(json_body).encode()
        self.routes[path.lstrip("/")] = dict(
            body=body, status=status, error=error, truncated=truncated
        )

    def get(self, url, stream=False, timeout=None, headers=None):
        path = url[len(ENDPOINT) :] if url.startswith(ENDPOINT) else url
        self.requested.append(path)
        route = self.routes.get(path)
        if route is None:
            return make_response(b"Not Found", 404, url)
        if route["error"] is not None:
            raise route["error"]
        return make_response(route["body"], route["status"], url, route["truncated"])

    def close(self):
        self.closed = True


def make_card(i: int, **kwargs) -> Card:
    kwargs.setdefault("card_type", "MainDeckCard")
    kwargs.setdefault("synced_at", 1_700_000_000_000)
    kwargs.setdefault("name", f"Card {i:05d}")
    return Card(id=f"card-{i:05d}", **kwargs)


def catalog_manifest(payload: bytes, version: int, filename: str = "cards.db", **counts) -> dict:
    """Manifest describing ``payload``; counts default to zero."""
    return {
        "version": version,
        "generated": "2026-10-01T00:00:00Z",
        "filename": filename,
        "hash": "sha256:" + hashlib.sha256(payload).hexdigest(),
        "size_bytes": len(payload),
        "card_count": counts.get("card_count", 0),
        "related_finishes_count": counts.get("related_finishes_count", 0),
        "related_cards_count": counts.get("related_cards_count", 0),
    }


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def config():
    return SyncConfig.with_endpoint(ENDPOINT)


@pytest.fixture
def store(tmp_path):
    col = CardCollection.open(tmp_path / "user_cards.db")
    col.ensure_default_folders()
    col.ensure_default_deck_folders()
    yield col
    col.close()


@pytest.fixture
def state(tmp_path):
    return JsonFileSyncState(tmp_path / "sync_state.json")


@pytest.fixture
def build_payload(tmp_path):
    """Factory writing a catalog database and returning its bytes."""
    counter = iter(range(1_000_000))

    def build(
        cards,
        related_finishes=(),
        related_cards=(),
        drop_table: Optional[str] = None,
    ) -> bytes:
        path = tmp_path / f"payload-{next(counter)}.db"
        create_database(path, cards, related_finishes, related_cards)
        if drop_table:
            db = sqlite3.connect(str(path))
            db.execute(f"DROP TABLE {drop_table}")
            db.commit()
            db.close()
        return Path(path).read_bytes()

    return build


@pytest.fixture
def serve_catalog(session):
    """Publish ``payload`` as catalog ``version``; returns the manifest dict."""

    def serve(payload: bytes, version: int, **manifest_overrides) -> dict:
        manifest = catalog_manifest(payload, version)
        manifest.update(manifest_overrides)
        session.add("api/cards/manifest", json_body=manifest)
        session.add("api/cards/database", body=payload)
        return manifest

    return serve
