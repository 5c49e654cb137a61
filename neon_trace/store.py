"""
Almacén de registros por colección para la API.

Expone una interfaz mínima (``get``, ``upsert``, ``list``, ``count``) con
tres backends: SQL vía SQLAlchemy cuando hay ``DATABASE_URL``, Redis cuando
hay ``REDIS_URL`` y memoria del proceso en otro caso. Los módulos de rutas
y notificaciones nunca tocan el almacén; solo la capa HTTP lo usa.
"""

import json
import os
import threading
from datetime import datetime
from typing import Any, Optional

import redis
from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker


Base = declarative_base()

Record = dict[str, Any]


def _matches(record: Record, filter: Optional[Record]) -> bool:
    if not filter:
        return True
    return all(record.get(field) == value for field, value in filter.items())


def _dumps(record: Record) -> str:
    return json.dumps(record, default=str)


class RecordStore:
    """Interfaz del almacén de registros."""

    name = "base"

    def get(self, collection: str, key: str) -> Optional[Record]:  # pragma: no cover - interface
        raise NotImplementedError

    def upsert(self, collection: str, key: str, record: Record) -> Record:  # pragma: no cover - interface
        raise NotImplementedError

    def list(self, collection: str, limit: int = 50, filter: Optional[Record] = None) -> list[Record]:  # pragma: no cover - interface
        raise NotImplementedError

    def count(self, collection: str, filter: Optional[Record] = None) -> int:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryRecordStore(RecordStore):
    """Backend en memoria; los más recientes primero en ``list``."""

    name = "memory"

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Record]] = {}
        self._lock = threading.Lock()

    def get(self, collection: str, key: str) -> Optional[Record]:
        record = self._collections.get(collection, {}).get(key)
        return dict(record) if record is not None else None

    def upsert(self, collection: str, key: str, record: Record) -> Record:
        with self._lock:
            # Actualizar una clave existente conserva su posición de inserción.
            self._collections.setdefault(collection, {})[key] = dict(record)
        return dict(record)

    def list(self, collection: str, limit: int = 50, filter: Optional[Record] = None) -> list[Record]:
        records = reversed(list(self._collections.get(collection, {}).values()))
        matched = [dict(r) for r in records if _matches(r, filter)]
        return matched[:limit]

    def count(self, collection: str, filter: Optional[Record] = None) -> int:
        return sum(1 for r in self._collections.get(collection, {}).values() if _matches(r, filter))


class StoredRecord(Base):
    """Registro JSON de una colección."""

    __tablename__ = "records"
    __table_args__ = (UniqueConstraint("collection", "key", name="uq_records_collection_key"),)

    id = Column(Integer, primary_key=True, index=True)
    collection = Column(String, index=True, nullable=False)
    key = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:  # pragma: no cover
        return f"StoredRecord(collection={self.collection}, key={self.key})"


def get_engine(db_url: str | None = None):
    """Inicializa el motor de base de datos.

    Se prioriza la variable de entorno ``DATABASE_URL`` y se cae en SQLite
    local cuando no está definida. Con SQLite se agregan los
    ``connect_args`` para permitir conexiones multi-hilo.
    """

    url = db_url or os.getenv("DATABASE_URL", "sqlite:///./neon_trace.db")
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


def init_db(engine=None) -> None:
    """Crea las tablas en la base de datos si no existen."""
    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


class SqlRecordStore(RecordStore):
    """Backend SQLAlchemy con una tabla ``records`` de payload JSON."""

    name = "sql"

    def __init__(self, engine=None) -> None:
        self.engine = engine if engine is not None else get_engine()
        init_db(self.engine)
        self._sessions = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def get_session(self) -> Session:
        return self._sessions()

    def get(self, collection: str, key: str) -> Optional[Record]:
        session = self.get_session()
        try:
            row = (
                session.query(StoredRecord)
                .filter(StoredRecord.collection == collection, StoredRecord.key == key)
                .first()
            )
            return json.loads(row.payload) if row else None
        finally:
            session.close()

    def upsert(self, collection: str, key: str, record: Record) -> Record:
        payload = _dumps(record)
        session = self.get_session()
        try:
            row = (
                session.query(StoredRecord)
                .filter(StoredRecord.collection == collection, StoredRecord.key == key)
                .first()
            )
            if row is None:
                session.add(StoredRecord(collection=collection, key=key, payload=payload))
            else:
                row.payload = payload
            session.commit()
            return json.loads(payload)
        finally:
            session.close()

    def list(self, collection: str, limit: int = 50, filter: Optional[Record] = None) -> list[Record]:
        session = self.get_session()
        try:
            query = (
                session.query(StoredRecord)
                .filter(StoredRecord.collection == collection)
                .order_by(StoredRecord.created_at.desc(), StoredRecord.id.desc())
            )
            if not filter:
                return [json.loads(row.payload) for row in query.limit(limit).all()]
            matched: list[Record] = []
            for row in query.all():
                record = json.loads(row.payload)
                if _matches(record, filter):
                    matched.append(record)
                    if len(matched) >= limit:
                        break
            return matched
        finally:
            session.close()

    def count(self, collection: str, filter: Optional[Record] = None) -> int:
        session = self.get_session()
        try:
            query = session.query(StoredRecord).filter(StoredRecord.collection == collection)
            if not filter:
                return query.count()
            return sum(1 for row in query.all() if _matches(json.loads(row.payload), filter))
        finally:
            session.close()


class RedisRecordStore(RecordStore):
    """Backend Redis: un hash por colección y un sorted set para el orden."""

    name = "redis"

    def __init__(self, redis_url: str | None = None, client=None, prefix: str = "neon") -> None:
        self.redis_url = redis_url or os.getenv("REDIS_URL")
        if client is None:
            if not self.redis_url:
                raise ValueError("REDIS_URL requerido para RedisRecordStore")
            client = redis.from_url(self.redis_url, decode_responses=True)
        self._client = client
        self.prefix = prefix

    def _hash_key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}"

    def _order_key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}:order"

    def get(self, collection: str, key: str) -> Optional[Record]:
        raw = self._client.hget(self._hash_key(collection), key)
        return json.loads(raw) if raw else None

    def upsert(self, collection: str, key: str, record: Record) -> Record:
        payload = _dumps(record)
        self._client.hset(self._hash_key(collection), key, payload)
        # Un contador monotónico evita empates de orden entre inserciones.
        sequence = self._client.incr(f"{self.prefix}:{collection}:seq")
        self._client.zadd(self._order_key(collection), {key: sequence}, nx=True)
        return json.loads(payload)

    def list(self, collection: str, limit: int = 50, filter: Optional[Record] = None) -> list[Record]:
        keys = self._client.zrevrange(self._order_key(collection), 0, -1)
        matched: list[Record] = []
        for key in keys:
            record = self.get(collection, key)
            if record is not None and _matches(record, filter):
                matched.append(record)
                if len(matched) >= limit:
                    break
        return matched

    def count(self, collection: str, filter: Optional[Record] = None) -> int:
        if not filter:
            return int(self._client.hlen(self._hash_key(collection)))
        return sum(1 for raw in self._client.hvals(self._hash_key(collection)) if _matches(json.loads(raw), filter))


def store_from_env() -> RecordStore:
    """SQL si hay ``DATABASE_URL``, Redis si hay ``REDIS_URL``, si no memoria."""

    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return SqlRecordStore(get_engine(database_url))
    redis_url = os.getenv("REDIS_URL")
    if redis_url:
        return RedisRecordStore(redis_url)
    return InMemoryRecordStore()
