import asyncio
import logging
import secrets
from datetime import datetime
from typing import List, Optional

from sqlalchemy import case, or_, select, update
from sqlalchemy.orm import sessionmaker

from models import APIKey
from schemas import ApiKeyPurpose, ApiKeyRecord, DataClassification

logger = logging.getLogger("gateway.keys")


def generate_api_key() -> str:
    """
    32 random bytes, hex encoded (64 characters).
    """
    return secrets.token_hex(32)


class ApiKeyStore:
    """
    Accessor for the api_keys table.

    Every public method is a coroutine; the blocking SQLAlchemy work runs
    in a worker thread so the event loop keeps serving other requests.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # =========================
    # Lookup
    # =========================

    async def find_by_token(
        self,
        token: str,
        now: datetime,
        client_ip: Optional[str] = None,
    ) -> Optional[ApiKeyRecord]:
        """
        Return the key matching token that has not expired at `now`.

        When client_ip is given, keys with a non-empty allowed_ips list
        that does not contain it are treated as unknown.
        """
        record = await asyncio.to_thread(self._find_by_token, token, now)

        if record is None:
            return None

        if client_ip is not None and record.allowed_ips and client_ip not in record.allowed_ips:
            logger.info(f"API key rejected for ip {client_ip}: not in allowed_ips")
            return None

        return record

    def _find_by_token(self, token: str, now: datetime) -> Optional[ApiKeyRecord]:
        stmt = select(APIKey).where(
            APIKey.key == token,
            or_(
                APIKey.expiration_date.is_(None),
                APIKey.expiration_date > now,
            ),
        )

        with self._session_factory() as session:
            row = session.execute(stmt).scalar_one_or_none()
            if row is None:
                return None
            return ApiKeyRecord.model_validate(row)

    # =========================
    # Usage accounting
    # =========================

    async def increment_usage(self, token: str, now: datetime) -> None:
        await asyncio.to_thread(self._increment_usage, token, now)

    def _increment_usage(self, token: str, now: datetime) -> None:
        # Single UPDATE so concurrent requests on the same key never lose a count
        stmt = (
            update(APIKey)
            .where(APIKey.key == token)
            .values(
                usages=APIKey.usages + 1,
                last_used=case(
                    (or_(APIKey.last_used.is_(None), APIKey.last_used < now), now),
                    else_=APIKey.last_used,
                ),
            )
        )

        with self._session_factory() as session:
            session.execute(stmt)
            session.commit()

    # =========================
    # Creation
    # =========================

    async def create(
        self,
        *,
        purpose: ApiKeyPurpose,
        data_classification: List[DataClassification],
        created_by: str,
        now: datetime,
        description: Optional[str] = None,
        allowed_ips: Optional[List[str]] = None,
        expiration_date: Optional[datetime] = None,
    ) -> ApiKeyRecord:
        row = APIKey(
            key=generate_api_key(),
            description=description or f"{purpose.value} key",
            purpose=purpose.value,
            data_classification=[c.value for c in data_classification],
            created_by=created_by,
            created_at=now,
            updated_at=now,
            expiration_date=expiration_date,
            last_used=None,
            usages=0,
            allowed_ips=list(allowed_ips or []),
            rate_limit=0,
        )
        return await asyncio.to_thread(self._insert, row)

    def _insert(self, row: APIKey) -> ApiKeyRecord:
        with self._session_factory() as session:
            session.add(row)
            session.commit()
            record = ApiKeyRecord.model_validate(row)

        logger.info(f"Created {record.purpose.value} API key for {record.created_by}")
        return record
