"""Borradores de ticket retenidos en Redis (signup pendiente o pago pendiente)"""
import json
import logging
import secrets
from typing import Optional

import redis.asyncio as redis

from app.core.config import settings
from services.ticket_purchase.models.ticket import Account, TicketDraft

logger = logging.getLogger(__name__)

SIGNUP_PREFIX = "pending:signup"
PAYMENT_PREFIX = "pending:payment"
CLAIM_TTL_SECONDS = 60


class PendingDraftStore:
    """
    Token de un solo uso por borrador.

    consume() usa GETDEL: el borrador se elimina en la misma operación que lo
    lee, así un segundo disparo del mismo token no encuentra nada. Los pagos
    usan peek() y claim(): el borrador sigue en Redis hasta que el ticket existe.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: Optional[int] = None):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.PENDING_DRAFT_TTL_SECONDS

    @staticmethod
    def _key(kind: str, token: str) -> str:
        return f"{kind}:{token}"

    @staticmethod
    def _claim_key(kind: str, token: str) -> str:
        return f"{kind}:{token}:claim"

    @staticmethod
    def new_token() -> str:
        return secrets.token_urlsafe(24)

    async def hold(self, kind: str, token: str, draft: TicketDraft, account: Optional[Account] = None):
        value = json.dumps({
            "draft": draft.model_dump(mode="json"),
            "account": account.model_dump() if account else None,
        })
        await self.redis.set(self._key(kind, token), value, ex=self.ttl_seconds)
        logger.info(f"Borrador retenido en {kind} (ttl={self.ttl_seconds}s)")

    @staticmethod
    def _decode(value: Optional[str]) -> Optional[dict]:
        if value is None:
            return None
        data = json.loads(value)
        account = data.get("account")
        return {
            "draft": TicketDraft.model_validate(data["draft"]),
            "account": Account.model_validate(account) if account else None,
        }

    async def consume(self, kind: str, token: str) -> Optional[dict]:
        """Leer y eliminar; None si no existe, expiró o ya fue consumido"""
        return self._decode(await self.redis.getdel(self._key(kind, token)))

    async def peek(self, kind: str, token: str) -> Optional[dict]:
        """Leer sin eliminar"""
        return self._decode(await self.redis.get(self._key(kind, token)))

    async def claim(self, kind: str, token: str, ttl_seconds: int = CLAIM_TTL_SECONDS) -> bool:
        """
        Marcar el borrador como en proceso (SET NX)

        Solo un llamador obtiene True; la marca expira sola si el proceso muere
        sin liberarla.
        """
        return bool(await self.redis.set(self._claim_key(kind, token), "1", nx=True, ex=ttl_seconds))

    async def release_claim(self, kind: str, token: str):
        await self.redis.delete(self._claim_key(kind, token))

    async def discard(self, kind: str, token: str) -> bool:
        deleted = await self.redis.delete(self._key(kind, token))
        return bool(deleted)

    async def exists(self, kind: str, token: str) -> bool:
        return bool(await self.redis.exists(self._key(kind, token)))
