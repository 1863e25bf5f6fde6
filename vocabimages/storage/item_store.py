"""SQLite store for categories, items, candidates and collection progress."""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Optional

from vocabimages.catalog.models import CollectionProgress, ImageCandidate, Item, ItemKey, utcnow
from vocabimages.errors import ItemNotFound, StorageFailed


class ItemStore:
    """Flat item rows keyed by (category, letter, item).

    A single connection is shared between worker threads and serialized with
    a lock. Each ``save_item`` rewrites the item row and its candidates in one
    transaction.
    """

    def __init__(self, db_path: Path):
        """Initialize database connection and create schema if needed."""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._create_schema()

    def _create_schema(self):
        """Create database schema if it doesn't exist."""
        with self._lock:
            cursor = self.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS categories (
                    category_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS items (
                    category_id TEXT NOT NULL,
                    letter TEXT NOT NULL,
                    item_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    difficulty INTEGER NOT NULL DEFAULT 2,
                    status TEXT,
                    progress TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (category_id, letter, item_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS candidates (
                    category_id TEXT NOT NULL,
                    letter TEXT NOT NULL,
                    item_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    candidate_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (category_id, letter, item_id, position)
                )
            """)

            self.conn.commit()

    def register_category(self, category_id: str, name: Optional[str] = None) -> None:
        """Register a category in the database."""
        with self._lock:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO categories (category_id, name, created_at)
                VALUES (?, ?, ?)
            """,
                (category_id, name or category_id, utcnow().isoformat()),
            )
            self.conn.commit()

    def list_categories(self) -> list[str]:
        with self._lock:
            rows = self.conn.execute("SELECT category_id FROM categories ORDER BY category_id").fetchall()
        return [row["category_id"] for row in rows]

    def add_item(self, category_id: str, name: str, item_id: Optional[str] = None, letter: Optional[str] = None,
                 difficulty: int = 2) -> Item:
        """Add an item if it does not exist yet and return it.

        Letter defaults to the first character of the name and item id to the
        lowercased name.
        """
        item_id = item_id or name.strip().lower().replace(" ", "-")
        letter = (letter or name.strip()[0]).upper()
        self.register_category(category_id)

        with self._lock:
            self.conn.execute(
                """
                INSERT OR IGNORE INTO items (category_id, letter, item_id, name, difficulty, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (category_id, letter, item_id, name, difficulty, utcnow().isoformat()),
            )
            self.conn.commit()

        return self.load_item(ItemKey(category_id, letter, item_id))

    def load_item(self, key: ItemKey) -> Item:
        """Load an item with its candidates and progress.

        Raises:
            ItemNotFound: If no such item exists
        """
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM items WHERE category_id = ? AND letter = ? AND item_id = ?",
                tuple(key),
            ).fetchone()
            if row is None:
                raise ItemNotFound(f"Item not found: {key}")

            candidate_rows = self.conn.execute(
                """
                SELECT data FROM candidates
                WHERE category_id = ? AND letter = ? AND item_id = ?
                ORDER BY position
            """,
                tuple(key),
            ).fetchall()

        return self._row_to_item(row, candidate_rows)

    def find_item(self, category_id: str, item_id: str) -> Item:
        """Load an item by category and id regardless of its letter."""
        with self._lock:
            row = self.conn.execute(
                "SELECT letter FROM items WHERE category_id = ? AND item_id = ?", (category_id, item_id)
            ).fetchone()
        if row is None:
            raise ItemNotFound(f"Item not found: {category_id}/{item_id}")
        return self.load_item(ItemKey(category_id, row["letter"], item_id))

    def save_item(self, item: Item) -> None:
        """Persist the item's progress and full candidate list.

        Raises:
            StorageFailed: If the write cannot be committed
        """
        key = tuple(item.key)
        progress = json.dumps(item.progress.to_dict()) if item.progress else None
        status = item.progress.status.value if item.progress else None

        with self._lock:
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT OR REPLACE INTO items
                        (category_id, letter, item_id, name, difficulty, status, progress, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                        (*key, item.name, item.difficulty, status, progress, utcnow().isoformat()),
                    )
                    self.conn.execute(
                        "DELETE FROM candidates WHERE category_id = ? AND letter = ? AND item_id = ?", key
                    )
                    self.conn.executemany(
                        """
                        INSERT INTO candidates (category_id, letter, item_id, position, candidate_id, status, data)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                        [
                            (*key, position, c.candidate_id, c.status.value, json.dumps(c.to_dict()))
                            for position, c in enumerate(item.candidates)
                        ],
                    )
            except sqlite3.Error as e:
                raise StorageFailed(f"Failed to save item {item.key}: {e}") from e

    def list_items(self, category_id: str, letter: Optional[str] = None) -> list[Item]:
        """List items of a category, optionally limited to one letter."""
        query = "SELECT * FROM items WHERE category_id = ?"
        params: list = [category_id]
        if letter:
            query += " AND letter = ?"
            params.append(letter.upper())
        query += " ORDER BY letter, item_id"

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()

        items = []
        for row in rows:
            items.append(self.load_item(ItemKey(row["category_id"], row["letter"], row["item_id"])))
        return items

    def get_status_counts(self, category_id: str) -> dict[str, int]:
        """Count items per collection status (``unset`` when never collected)."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT COALESCE(status, 'unset') AS status, COUNT(*) AS n FROM items "
                "WHERE category_id = ? GROUP BY status",
                (category_id,),
            ).fetchall()
        return {row["status"]: row["n"] for row in rows}

    def _row_to_item(self, row: sqlite3.Row, candidate_rows: list[sqlite3.Row]) -> Item:
        progress = CollectionProgress.from_dict(json.loads(row["progress"])) if row["progress"] else None
        return Item(
            item_id=row["item_id"],
            name=row["name"],
            category_id=row["category_id"],
            letter=row["letter"],
            difficulty=row["difficulty"],
            candidates=[ImageCandidate.from_dict(json.loads(r["data"])) for r in candidate_rows],
            progress=progress,
        )

    def close(self):
        """Close database connection."""
        with self._lock:
            self.conn.close()
