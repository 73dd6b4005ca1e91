"""
Template Store Module

This module handles persistence of enrolled identity templates and of the
in-progress enrollment checkpoint.

Templates are stored as:
- .npz files: Contain the captured descriptors, the mean descriptor and metadata
- SQLite database: User metadata for efficient querying, plus the single
  "current" enrollment progress record

TemplateStorage is the abstract contract consumed by EnrollmentSession and
MatchIndex; TemplateStore is the SQLite/.npz implementation:
- save_progress / load_progress / clear_progress: resumable checkpoint
- save_user: persist a finalized IdentityTemplate (insert or replace)
- get_all_users: every template, in registration order
- get_user / delete_user: single-identity access

Usage:
    from faceid.template_store import TemplateStore, IdentityTemplate

    store = TemplateStore(storage_dir="storage/templates", db_path="storage/faceid.sqlite")

    template = IdentityTemplate(
        user_id="usr_abc123",
        user_name="Alice",
        descriptors=np.random.randn(20, 128).astype(np.float32),
    )
    store.save_user(template)
    loaded = store.get_user("usr_abc123")
"""

import hashlib
import json
import logging
import re
import sqlite3
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from faceid.errors import InvalidGalleryRecordError, InvalidInputError, PersistenceError

logger = logging.getLogger(__name__)

PROGRESS_KEY = "current"


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass
class IdentityTemplate:
    """
    An enrolled identity, as stored and as indexed for matching.

    Attributes:
        user_id: Unique identifier for the identity (e.g., "usr_a1b2c3d4").
        user_name: Human-readable display name.
        descriptors: Captured embeddings.
                     Shape: (N, L), dtype: float32, N >= 1.
        mean_descriptor: Per-dimension mean of the descriptors.
                         Shape: (L,), dtype: float32, or None.
        registered_at: Registration time in milliseconds since the epoch.
    """

    user_id: str
    user_name: str
    descriptors: np.ndarray  # (N, L) float32
    mean_descriptor: Optional[np.ndarray] = None  # (L,) float32
    registered_at: int = field(default_factory=now_ms)

    def __post_init__(self):
        """Validate and normalize template data after initialization."""
        if not self.user_id or not isinstance(self.user_id, str):
            raise InvalidGalleryRecordError("Identity record has no id")

        if not self.user_name:
            self.user_name = self.user_id

        try:
            descriptors = np.asarray(self.descriptors, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Descriptors for {self.user_id} are not a matrix: {e}") from e

        if descriptors.ndim == 1 and descriptors.shape[0] > 0:
            descriptors = descriptors.reshape(1, -1)
        if descriptors.ndim != 2 or descriptors.shape[0] == 0 or descriptors.shape[1] == 0:
            raise InvalidGalleryRecordError(
                f"Identity {self.user_id} has no usable descriptors (shape {descriptors.shape})"
            )
        self.descriptors = descriptors

        if self.mean_descriptor is not None:
            mean = np.asarray(self.mean_descriptor, dtype=np.float32).ravel()
            if mean.shape[0] != descriptors.shape[1]:
                raise InvalidInputError(
                    f"Mean descriptor for {self.user_id} has length {mean.shape[0]}, "
                    f"descriptors have {descriptors.shape[1]}"
                )
            self.mean_descriptor = mean

        self.registered_at = int(self.registered_at)

    @property
    def capture_count(self) -> int:
        """Return the number of captured descriptors."""
        return int(self.descriptors.shape[0])

    @property
    def embedding_dim(self) -> int:
        """Return the embedding length L."""
        return int(self.descriptors.shape[1])


def generate_user_id() -> str:
    """
    Generate a unique user ID.

    Format: "usr_" followed by 8 random hex characters.
    """
    return f"usr_{uuid.uuid4().hex[:8]}"


class TemplateStorage(ABC):
    """
    Abstract persistence contract for enrollment progress and templates.

    Implementations raise PersistenceError when the backing store fails.
    """

    @abstractmethod
    def save_progress(self, snapshot: Dict[str, Any]) -> None:
        """Store the in-progress enrollment snapshot under the fixed key."""

    @abstractmethod
    def load_progress(self) -> Optional[Dict[str, Any]]:
        """Return the stored enrollment snapshot, or None."""

    @abstractmethod
    def clear_progress(self) -> None:
        """Remove the stored enrollment snapshot (no-op if absent)."""

    @abstractmethod
    def save_user(self, template: IdentityTemplate) -> None:
        """Insert or replace a finalized identity template."""

    @abstractmethod
    def get_all_users(self) -> List[IdentityTemplate]:
        """Return every stored template in registration order."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[IdentityTemplate]:
        """Return one template, or None if the id is unknown."""

    @abstractmethod
    def delete_user(self, user_id: str) -> bool:
        """Delete one template. Returns False if the id is unknown."""


class TemplateStore(TemplateStorage):
    """
    SQLite + .npz implementation of TemplateStorage.

    Templates are stored in two places:
    1. Filesystem (.npz files): descriptors and mean descriptor
    2. SQLite database: user metadata and the enrollment progress record

    Attributes:
        storage_dir: Directory where .npz template files are stored.
        db_path: Path to the SQLite database file.
    """

    def __init__(self, storage_dir: str, db_path: str):
        """
        Initialize the TemplateStore.

        Creates the storage directory and database if they don't exist.

        Args:
            storage_dir: Path to directory for storing .npz files.
            db_path: Path to SQLite database file.
        """
        self.storage_dir = Path(storage_dir)
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None

        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_database()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Cannot initialize template store: {e}") from e

        logger.info(f"TemplateStore initialized: storage={self.storage_dir}, db={self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the SQLite connection (Row factory for dict-like access)."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self) -> None:
        """
        Initialize the SQLite database schema.

        Creates tables if they don't exist:
        - users: identity metadata and template paths
        - progress: the resumable enrollment checkpoint
        """
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                user_name TEXT NOT NULL,
                template_path TEXT NOT NULL,
                registered_at INTEGER NOT NULL,
                capture_count INTEGER,
                embedding_dim INTEGER,
                has_mean INTEGER
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS progress (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                user_name TEXT,
                embeddings TEXT NOT NULL,
                thumbnails TEXT NOT NULL,
                state TEXT,
                updated_at INTEGER
            )
        """)

        conn.commit()
        logger.debug("Database schema initialized")

    def _get_template_path(self, user_id: str) -> Path:
        """Filesystem path for a user's .npz file (ids may hold any characters)."""
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", user_id)[:64]
        digest = hashlib.sha1(user_id.encode("utf-8")).hexdigest()[:8]
        return self.storage_dir / f"{safe}_{digest}.npz"

    # ------------------------------------------------------------
    # Enrollment progress
    # ------------------------------------------------------------

    def save_progress(self, snapshot: Dict[str, Any]) -> None:
        """
        Store the enrollment checkpoint, replacing any previous one.

        Args:
            snapshot: Dict with user_id, user_name, embeddings (list of
                      vectors), thumbnails (list of str or None) and state.
        """
        embeddings = [np.asarray(e, dtype=np.float32).tolist() for e in snapshot.get("embeddings", [])]
        thumbnails = list(snapshot.get("thumbnails", []))

        try:
            conn = self._get_connection()
            conn.execute("""
                INSERT OR REPLACE INTO progress
                (id, user_id, user_name, embeddings, thumbnails, state, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                PROGRESS_KEY,
                snapshot.get("user_id", ""),
                snapshot.get("user_name", ""),
                json.dumps(embeddings),
                json.dumps(thumbnails),
                snapshot.get("state"),
                now_ms(),
            ))
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save enrollment progress: {e}") from e

        logger.debug(f"Saved enrollment progress: {len(embeddings)} captures")

    def load_progress(self) -> Optional[Dict[str, Any]]:
        """Return the stored checkpoint as a dict, or None if there is none."""
        try:
            cursor = self._get_connection().cursor()
            cursor.execute("SELECT * FROM progress WHERE id = ?", (PROGRESS_KEY,))
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to load enrollment progress: {e}") from e

        if row is None:
            return None

        return {
            "user_id": row["user_id"] or "",
            "user_name": row["user_name"] or "",
            "embeddings": json.loads(row["embeddings"]),
            "thumbnails": json.loads(row["thumbnails"]),
            "state": row["state"],
            "updated_at": row["updated_at"],
        }

    def clear_progress(self) -> None:
        """Delete the stored checkpoint."""
        try:
            conn = self._get_connection()
            conn.execute("DELETE FROM progress WHERE id = ?", (PROGRESS_KEY,))
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to clear enrollment progress: {e}") from e

    # ------------------------------------------------------------
    # Identity templates
    # ------------------------------------------------------------

    def save_user(self, template: IdentityTemplate, overwrite: bool = True) -> str:
        """
        Save an identity template to disk and register it in the database.

        The .npz file contains:
        - descriptors: (N, L) float32
        - mean_descriptor: (L,) float32, or (0,) when absent
        - metadata: JSON string with id, name and registration time

        Args:
            template: IdentityTemplate to save.
            overwrite: Replace an existing template with the same id
                       (re-enrollment). If False, a duplicate raises ValueError.

        Returns:
            Path to the saved template file (as string).

        Raises:
            ValueError: If overwrite is False and the id already exists.
            PersistenceError: If the file or database write fails.
        """
        if not overwrite and self.user_exists(template.user_id):
            raise ValueError(f"Template already exists for user_id: {template.user_id}")

        metadata = {
            "user_id": template.user_id,
            "user_name": template.user_name,
            "registered_at": template.registered_at,
        }
        has_mean = template.mean_descriptor is not None
        mean = template.mean_descriptor if has_mean else np.zeros(0, dtype=np.float32)

        template_path = self._get_template_path(template.user_id)
        try:
            np.savez_compressed(
                str(template_path),
                descriptors=template.descriptors,
                mean_descriptor=mean,
                metadata=json.dumps(metadata),
            )

            conn = self._get_connection()
            conn.execute("""
                INSERT OR REPLACE INTO users
                (user_id, user_name, template_path, registered_at,
                 capture_count, embedding_dim, has_mean)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                template.user_id,
                template.user_name,
                str(template_path),
                template.registered_at,
                template.capture_count,
                template.embedding_dim,
                int(has_mean),
            ))
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Failed to save template for {template.user_id}: {e}") from e

        logger.info(f"Saved template for {template.user_name} (id={template.user_id}, "
                    f"captures={template.capture_count})")

        return str(template_path)

    def _load_template_file(self, user_id: str, template_path: Path) -> Optional[IdentityTemplate]:
        """Read one .npz file back into an IdentityTemplate."""
        if not template_path.exists():
            logger.warning(f"Template file missing for user {user_id}: {template_path}")
            return None

        try:
            with np.load(str(template_path)) as data:
                metadata = json.loads(str(data["metadata"]))
                mean = data["mean_descriptor"]
                return IdentityTemplate(
                    user_id=metadata.get("user_id", user_id),
                    user_name=metadata.get("user_name", user_id),
                    descriptors=data["descriptors"],
                    mean_descriptor=mean if mean.size > 0 else None,
                    registered_at=metadata.get("registered_at", 0),
                )
        except (OSError, ValueError, KeyError) as e:
            raise PersistenceError(f"Failed to load template {user_id}: {e}") from e

    def get_user(self, user_id: str) -> Optional[IdentityTemplate]:
        """
        Load a single identity template.

        Returns:
            IdentityTemplate, or None if the id is unknown or its file is gone.
        """
        try:
            cursor = self._get_connection().cursor()
            cursor.execute("SELECT template_path FROM users WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to look up user {user_id}: {e}") from e

        if row is None:
            return None

        return self._load_template_file(user_id, Path(row["template_path"]))

    def get_all_users(self) -> List[IdentityTemplate]:
        """
        Load all enrolled identity templates, oldest registration first.

        Used to build the gallery for 1:N identification.
        """
        try:
            cursor = self._get_connection().cursor()
            cursor.execute("""
                SELECT user_id, template_path FROM users
                ORDER BY registered_at ASC, rowid ASC
            """)
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to list templates: {e}") from e

        templates = []
        for row in rows:
            template = self._load_template_file(row["user_id"], Path(row["template_path"]))
            if template is not None:
                templates.append(template)

        logger.info(f"Loaded {len(templates)} templates")
        return templates

    def delete_user(self, user_id: str) -> bool:
        """
        Delete a user's template from both filesystem and database.

        Returns:
            True if deletion was successful, False if user not found.
        """
        try:
            conn = self._get_connection()
            cursor = conn.cursor()
            cursor.execute("SELECT template_path FROM users WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()

            if row is None:
                logger.warning(f"Cannot delete: user {user_id} not found")
                return False

            cursor.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to delete user {user_id}: {e}") from e

        template_path = Path(row["template_path"])
        if template_path.exists():
            try:
                template_path.unlink()
            except OSError as e:
                logger.warning(f"Failed to delete template file {template_path}: {e}")

        logger.info(f"Deleted template for user {user_id}")
        return True

    # ------------------------------------------------------------
    # Metadata queries
    # ------------------------------------------------------------

    def list_users(self) -> List[Dict[str, Any]]:
        """
        List all enrolled users with their metadata, newest first.

        Returns:
            List of dicts with user_id, user_name, registered_at,
            capture_count, embedding_dim and has_mean.
        """
        try:
            cursor = self._get_connection().cursor()
            cursor.execute("""
                SELECT user_id, user_name, registered_at, capture_count, embedding_dim, has_mean
                FROM users
                ORDER BY registered_at DESC, rowid DESC
            """)
            rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to list users: {e}") from e

        return [self._row_to_info(row) for row in rows]

    def get_user_info(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Metadata for one user, or None if not found."""
        try:
            cursor = self._get_connection().cursor()
            cursor.execute("""
                SELECT user_id, user_name, registered_at, capture_count, embedding_dim, has_mean
                FROM users
                WHERE user_id = ?
            """, (user_id,))
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read user {user_id}: {e}") from e

        return self._row_to_info(row) if row is not None else None

    @staticmethod
    def _row_to_info(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "user_id": row["user_id"],
            "user_name": row["user_name"],
            "registered_at": row["registered_at"],
            "capture_count": row["capture_count"],
            "embedding_dim": row["embedding_dim"],
            "has_mean": bool(row["has_mean"]),
        }

    def user_exists(self, user_id: str) -> bool:
        """Check if a user with the given ID exists."""
        try:
            cursor = self._get_connection().cursor()
            cursor.execute("SELECT 1 FROM users WHERE user_id = ?", (user_id,))
            return cursor.fetchone() is not None
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to look up user {user_id}: {e}") from e

    def get_stats(self) -> Dict[str, Any]:
        """
        Get statistics about the template database.

        Returns:
            Dictionary with total_users, total_descriptors and has_progress.
        """
        try:
            cursor = self._get_connection().cursor()

            cursor.execute("SELECT COUNT(*) AS count, SUM(capture_count) AS total FROM users")
            user_stats = cursor.fetchone()

            cursor.execute("SELECT COUNT(*) AS count FROM progress")
            progress_stats = cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read store statistics: {e}") from e

        return {
            "total_users": user_stats["count"] or 0,
            "total_descriptors": user_stats["total"] or 0,
            "has_progress": bool(progress_stats["count"]),
        }

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Database connection closed")

    def __del__(self):
        """Clean up resources on deletion."""
        self.close()


# Singleton instance for the store
_store_instance: Optional[TemplateStore] = None


def get_template_store(
    storage_dir: Optional[str] = None,
    db_path: Optional[str] = None
) -> TemplateStore:
    """
    Get or create the shared TemplateStore instance.

    Args:
        storage_dir: Path to template storage directory.
                     If None, uses value from config.
        db_path: Path to SQLite database.
                 If None, uses value from config.
    """
    global _store_instance

    if _store_instance is None:
        if storage_dir is None or db_path is None:
            from faceid.config import get_project_root, get_storage_config

            storage_config = get_storage_config()
            project_root = get_project_root()

            if storage_dir is None:
                storage_dir = str(project_root / storage_config["templates_dir"])
            if db_path is None:
                db_path = str(project_root / storage_config["db_path"])

        _store_instance = TemplateStore(storage_dir, db_path)

    return _store_instance
