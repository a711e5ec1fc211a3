"""
Idempotency store for client requests.

Two tiers:
1. Redis for fast lookups (optional)
2. Database for persistence and reliability

Caching is best-effort. Nothing locks the window between a miss and the
matching store, so two concurrent first requests under one key can both
execute; the unique constraint keeps a single cached response.
"""
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_gateway.config import Settings, get_settings
from momo_gateway.core.errors import IdempotencyConflict, ValidationError
from momo_gateway.database.connection import get_session_factory
from momo_gateway.database.models import IdempotencyRecord, utcnow
from momo_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CachedResult:
    """Response replayed for a repeated Idempotency-Key."""

    status_code: int
    body: str

    def json(self) -> Any:
        return json.loads(self.body)


class IdempotencyStore:
    """
    Caches responses by (tenant, Idempotency-Key).

    A key is bound to the (method, path) it was first used with; reusing it
    elsewhere is a client error rather than a cache hit.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize idempotency store.

        Args:
            session_factory: Session factory (defaults to the global one)
            redis_client: Optional Redis client; created from settings.redis_url if unset
            settings: Application settings
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.redis_client = redis_client
        self.ttl = timedelta(hours=self.settings.idempotency_ttl_hours)

    async def _ensure_redis(self) -> Optional[aioredis.Redis]:
        """Return the Redis client, or None when the fast tier is disabled."""
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def validate_key(key: Optional[str]) -> str:
        """
        Check that an Idempotency-Key is a canonical RFC 4122 UUID.

        Raises:
            ValidationError: If the key is empty or malformed
        """
        if not key:
            raise ValidationError("Idempotency-Key must not be empty")
        try:
            parsed = uuid.UUID(key)
        except ValueError:
            raise ValidationError("Idempotency-Key must be a UUID")
        if (
            parsed.variant != uuid.RFC_4122
            or parsed.version not in (1, 2, 3, 4, 5)
            or str(parsed) != key.lower()
        ):
            raise ValidationError("Idempotency-Key must be a UUID")
        return key.lower()

    @staticmethod
    def _redis_key(tenant_id: str, key: str) -> str:
        return f"idempotency:{tenant_id}:{key}"

    async def lookup(
        self, tenant_id: str, key: str, method: str, path: str
    ) -> Optional[CachedResult]:
        """
        Return the cached response for this key, or None on a miss.

        Expired records count as a miss.

        Raises:
            IdempotencyConflict: If the key was used with another method/path
        """
        method = method.upper()

        try:
            redis = await self._ensure_redis()
            if redis is not None:
                cached = await redis.get(self._redis_key(tenant_id, key))
                if cached:
                    entry = json.loads(cached)
                    self._check_binding(key, entry["method"], entry["path"], method, path)
                    metrics.record_idempotency_lookup("redis_hit")
                    logger.info(
                        "idempotency_cache_hit",
                        tenant_id=tenant_id,
                        idempotency_key=key,
                        source="redis",
                    )
                    return CachedResult(entry["status_code"], entry["body"])
        except IdempotencyConflict:
            raise
        except Exception as e:
            logger.warning(
                "redis_cache_error",
                error=str(e),
                tenant_id=tenant_id,
                idempotency_key=key,
            )

        async with self.session_factory() as session:
            result = await session.execute(
                select(IdempotencyRecord).where(
                    IdempotencyRecord.tenant_id == tenant_id,
                    IdempotencyRecord.idempotency_key == key,
                )
            )
            record = result.scalar_one_or_none()

        if record is None:
            metrics.record_idempotency_lookup("miss")
            logger.info("idempotency_cache_miss", tenant_id=tenant_id, idempotency_key=key)
            return None

        if record.expires_at <= utcnow():
            metrics.record_idempotency_lookup("expired")
            logger.info("idempotency_record_expired", tenant_id=tenant_id, idempotency_key=key)
            return None

        self._check_binding(key, record.method, record.path, method, path)
        metrics.record_idempotency_lookup("database_hit")
        logger.info(
            "idempotency_cache_hit",
            tenant_id=tenant_id,
            idempotency_key=key,
            source="database",
        )
        await self._cache_in_redis(tenant_id, key, record)
        return CachedResult(record.status_code, record.response_body)

    def _check_binding(
        self, key: str, stored_method: str, stored_path: str, method: str, path: str
    ) -> None:
        if stored_method != method or stored_path != path:
            metrics.record_idempotency_lookup("conflict")
            logger.warning(
                "idempotency_key_reused",
                idempotency_key=key,
                stored_method=stored_method,
                stored_path=stored_path,
                method=method,
                path=path,
            )
            raise IdempotencyConflict(
                f"Idempotency-Key {key} was already used for {stored_method} {stored_path}"
            )

    async def store(
        self,
        tenant_id: str,
        key: str,
        method: str,
        path: str,
        status_code: int,
        body: Any,
        ttl: Optional[timedelta] = None,
    ) -> None:
        """
        Persist a completed response under this key.

        `body` is serialized once here; replays return exactly this text.
        Failures are logged and swallowed.
        """
        text = body if isinstance(body, str) else json.dumps(body, default=str)
        now = utcnow()
        expires_at = now + (ttl or self.ttl)
        method = method.upper()

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(IdempotencyRecord).where(
                        IdempotencyRecord.tenant_id == tenant_id,
                        IdempotencyRecord.idempotency_key == key,
                    )
                )
                record = result.scalar_one_or_none()
                if record is None:
                    record = IdempotencyRecord(
                        tenant_id=tenant_id,
                        idempotency_key=key,
                        method=method,
                        path=path,
                        status_code=status_code,
                        response_body=text,
                        created_at=now,
                        expires_at=expires_at,
                    )
                    session.add(record)
                elif record.expires_at <= now:
                    record.method = method
                    record.path = path
                    record.status_code = status_code
                    record.response_body = text
                    record.created_at = now
                    record.expires_at = expires_at
                else:
                    logger.info(
                        "idempotency_record_exists",
                        tenant_id=tenant_id,
                        idempotency_key=key,
                    )
                    return
                await session.commit()
        except IntegrityError:
            # Concurrent first request stored its response first
            logger.info("idempotency_store_race_lost", tenant_id=tenant_id, idempotency_key=key)
            return
        except SQLAlchemyError as e:
            logger.error(
                "idempotency_store_error",
                error=str(e),
                tenant_id=tenant_id,
                idempotency_key=key,
            )
            return

        logger.info("idempotency_response_cached", tenant_id=tenant_id, idempotency_key=key)
        await self._cache_in_redis(tenant_id, key, record)

    async def _cache_in_redis(self, tenant_id: str, key: str, record: IdempotencyRecord) -> None:
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return
            ttl_seconds = int((record.expires_at - utcnow()).total_seconds())
            if ttl_seconds <= 0:
                return
            await redis.setex(
                self._redis_key(tenant_id, key),
                ttl_seconds,
                json.dumps(
                    {
                        "method": record.method,
                        "path": record.path,
                        "status_code": record.status_code,
                        "body": record.response_body,
                    }
                ),
            )
        except Exception as e:
            logger.warning("redis_cache_set_error", error=str(e), idempotency_key=key)

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete records past expires_at.

        Returns:
            int: Number of records removed
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= now)
            )
            await session.commit()
        removed = result.rowcount or 0
        logger.info("idempotency_records_swept", removed=removed)
        return removed

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
