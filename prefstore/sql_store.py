"""
SQLAlchemy-backed preference store.

Relational databases have no partial update for a JSON column that is
portable across engines, so writes that depend on the current record use
optimistic concurrency: read the row and its version, compute the new map,
then write it back only if the version is unchanged, retrying otherwise.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from sqlalchemy import JSON, Column, Float, Integer, String, create_engine, delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from prefstore.errors import StoreDataError, StoreUnavailableError
from prefstore.store import check_set_size, record_key

logger = logging.getLogger(__name__)

Change = Callable[[Dict[str, str]], Optional[Dict[str, str]]]


class SqlPreferenceStore:
    """
    Accepts any SQLAlchemy URL (e.g., Postgres, or SQLite for tests).
    """

    def __init__(self, database_url: str, max_attempts: int = 5):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlPreferenceStore")
        self.max_attempts = max_attempts
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _decode(self, row: "PreferenceRow") -> Dict[str, str]:
        if not isinstance(row.preferences, dict):
            raise StoreDataError(f"preferences of {row.pk} is not a mapping")
        result: Dict[str, str] = {}
        for key, value in row.preferences.items():
            if not isinstance(value, str):
                logger.warning("Skipping non-string preference %r in %s", key, row.pk)
                continue
            result[key] = value
        return result

    def _load(self, user_id: str) -> Optional[tuple[Dict[str, str], int]]:
        try:
            with self.Session() as session:
                row = session.get(PreferenceRow, record_key(user_id))
                if not row:
                    return None
                return self._decode(row), row.version
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"load {record_key(user_id)}: {exc}") from exc

    def _write(
        self,
        user_id: str,
        preferences: Dict[str, str],
        expected_version: Optional[int],
    ) -> bool:
        """Write ``preferences`` if the row is still at ``expected_version``."""
        now = time.time()
        pk = record_key(user_id)
        try:
            with self.Session() as session:
                if expected_version is None:
                    session.add(
                        PreferenceRow(
                            pk=pk,
                            user_id=user_id,
                            preferences=preferences,
                            version=1,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        return False
                    return True

                result = session.execute(
                    update(PreferenceRow)
                    .where(
                        PreferenceRow.pk == pk,
                        PreferenceRow.version == expected_version,
                    )
                    .values(
                        preferences=preferences,
                        version=expected_version + 1,
                        updated_at=now,
                    )
                )
                session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"write {pk}: {exc}") from exc

    def _mutate(
        self, user_id: str, change: Change, *, create: bool = True
    ) -> Optional[Dict[str, str]]:
        """
        Apply ``change`` to the current map and persist the result.

        ``change`` may return None to skip the write. Returns the persisted
        map, or None when the user has no preferences and ``create`` is False.
        """
        for attempt in range(1, self.max_attempts + 1):
            current = self._load(user_id)
            if current is None:
                if not create:
                    return None
                preferences, version = {}, None
            else:
                preferences, version = current

            changed = change(dict(preferences))
            if changed is None:
                return preferences
            if self._write(user_id, changed, version):
                return changed
            logger.debug(
                "Version conflict on %s (attempt %d)", record_key(user_id), attempt
            )

        raise StoreUnavailableError(
            f"{record_key(user_id)} kept conflicting after {self.max_attempts} attempts"
        )

    def get_all(self, user_id: str) -> Optional[Dict[str, str]]:
        current = self._load(user_id)
        return current[0] if current else None

    def get(self, user_id: str, key: str) -> Optional[str]:
        preferences = self.get_all(user_id)
        if preferences is None:
            return None
        return preferences.get(key)

    def replace_all(self, user_id: str, preferences: Dict[str, str]) -> None:
        check_set_size(preferences)
        self._mutate(user_id, lambda _current: dict(preferences))

    def update(self, user_id: str, preferences: Dict[str, str]) -> Dict[str, str]:
        def merge(current: Dict[str, str]) -> Dict[str, str]:
            current.update(preferences)
            check_set_size(current)
            return current

        return self._mutate(user_id, merge)

    def delete_all(self, user_id: str) -> None:
        try:
            with self.Session() as session:
                session.execute(
                    delete(PreferenceRow).where(PreferenceRow.pk == record_key(user_id))
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(
                f"delete {record_key(user_id)}: {exc}"
            ) from exc

    def delete(self, user_id: str, key: str) -> None:
        def remove(current: Dict[str, str]) -> Optional[Dict[str, str]]:
            if key not in current:
                return None
            del current[key]
            return current

        self._mutate(user_id, remove, create=False)


Base = declarative_base()


class PreferenceRow(Base):
    __tablename__ = "user_preferences"

    pk = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    preferences = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
