"""
Durable storage for one-shot markers and small engine settings.

Markers back the mutation idempotency checks and the notification gate.
Each marker is keyed by (namespace, participant_id, round_id, action).

Eviction policy:
    - markers created with ``expires_at`` are deleted by ``evict_expired(now)``
      once that instant has passed (round end + retention days)
    - markers without ``expires_at`` are never evicted

The key/value table holds the simulated clock offset and the cached
dashboard snapshot.
"""
from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


class MarkerRow(Base):
    __tablename__ = "markers"
    __table_args__ = (
        UniqueConstraint("namespace", "participant_id", "round_id", "action", name="uq_marker_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    namespace = Column(String(64), nullable=False)
    participant_id = Column(String(128), nullable=False)
    round_id = Column(String(128), nullable=False)
    action = Column(String(64), nullable=False, default="")
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=True, index=True)


class KeyValueRow(Base):
    __tablename__ = "key_values"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)


def _to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo, so everything is stored as naive UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _marker_key(namespace: str, participant_id: str, round_id: str, action: str) -> tuple:
    return (
        MarkerRow.namespace == namespace,
        MarkerRow.participant_id == participant_id,
        MarkerRow.round_id == round_id,
        MarkerRow.action == action,
    )


class StateStorage:
    """SQLAlchemy-backed marker and key/value store."""

    def __init__(self, url: str = "sqlite://"):
        self.url = url
        kwargs: dict[str, Any] = {}
        if url.startswith("sqlite"):
            # One connection shared across the loop, ticker and mutation threads
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        self._sessionmaker = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._lock = threading.Lock()
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """Commit on success, roll back and re-raise on failure."""
        with self._lock:
            db = self._sessionmaker()
            try:
                yield db
                db.commit()
            except Exception as e:
                logger.error(f"Storage transaction failed: {e}", exc_info=True)
                db.rollback()
                raise
            finally:
                db.close()

    # ------------------------------------------------------------------ markers

    def has_marker(self, namespace: str, participant_id: str, round_id: str, action: str = "") -> bool:
        with self._transaction() as db:
            row = db.execute(
                select(MarkerRow.id).where(
                    *_marker_key(namespace, participant_id, round_id, action)
                )
            ).first()
            return row is not None

    def set_marker(
        self,
        namespace: str,
        participant_id: str,
        round_id: str,
        action: str = "",
        *,
        created_at: datetime,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """
        Create the marker if absent.

        Returns True when this call created it, False when it already existed.
        The check and the insert happen in one transaction, so two racing
        callers cannot both get True.
        """
        try:
            with self._transaction() as db:
                existing = db.execute(
                    select(MarkerRow.id).where(
                        *_marker_key(namespace, participant_id, round_id, action)
                    )
                ).first()
                if existing is not None:
                    return False
                db.add(
                    MarkerRow(
                        namespace=namespace,
                        participant_id=participant_id,
                        round_id=round_id,
                        action=action,
                        created_at=_to_utc_naive(created_at),
                        expires_at=_to_utc_naive(expires_at),
                    )
                )
        except IntegrityError:
            return False
        return True

    def clear_marker(self, namespace: str, participant_id: str, round_id: str, action: str = "") -> None:
        with self._transaction() as db:
            db.execute(
                delete(MarkerRow).where(
                    *_marker_key(namespace, participant_id, round_id, action)
                )
            )

    def evict_expired(self, now: datetime) -> int:
        cutoff = _to_utc_naive(now)
        with self._transaction() as db:
            result = db.execute(
                delete(MarkerRow).where(
                    MarkerRow.expires_at.is_not(None),
                    MarkerRow.expires_at <= cutoff,
                )
            )
            evicted = result.rowcount or 0
        if evicted:
            logger.debug(f"Evicted {evicted} expired markers")
        return evicted

    # --------------------------------------------------------------- key/value

    def get_value(self, key: str, default: Any = None) -> Any:
        with self._transaction() as db:
            row = db.get(KeyValueRow, key)
            if row is None:
                return default
            raw = row.value
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable stored value for {key}")
            return default

    def set_value(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with self._transaction() as db:
            row = db.get(KeyValueRow, key)
            if row is None:
                db.add(KeyValueRow(key=key, value=encoded))
            else:
                row.value = encoded

    def delete_value(self, key: str) -> None:
        with self._transaction() as db:
            db.execute(delete(KeyValueRow).where(KeyValueRow.key == key))
