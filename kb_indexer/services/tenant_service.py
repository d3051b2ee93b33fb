import logging
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

import redis

from kb_indexer.exceptions import PersistenceError
from kb_indexer.models.tenant import TenantContext

logger = logging.getLogger(__name__)

class TenantDirectory(ABC):
    """
    Resolves the tenant that owns a chatbot and the knowledge base limit of its tier.
    """
    def __init__(self, tier_limits_mb: Mapping[str, float]):
        self.tier_limits_mb = dict(tier_limits_mb)

    @abstractmethod
    def get_tenant_for_chatbot(self, chatbot_id: str) -> Optional[TenantContext]:
        pass

    def knowledge_base_limit_mb(self, tier: str) -> float:
        """Unknown tiers fall back to the free tier limit."""
        if tier in self.tier_limits_mb:
            return float(self.tier_limits_mb[tier])
        logger.warning(f"Unknown tier '{tier}', applying the free tier knowledge base limit.")
        return float(self.tier_limits_mb.get("free", 0.0))


class InMemoryTenantDirectory(TenantDirectory):
    def __init__(self, tier_limits_mb: Mapping[str, float]):
        super().__init__(tier_limits_mb)
        self._tenants: Dict[str, TenantContext] = {}
        self._chatbot_owners: Dict[str, str] = {}

    def register_tenant(self, tenant: TenantContext) -> None:
        self._tenants[tenant.tenant_id] = tenant

    def assign_chatbot(self, chatbot_id: str, tenant_id: str) -> None:
        self._chatbot_owners[chatbot_id] = tenant_id

    def get_tenant_for_chatbot(self, chatbot_id: str) -> Optional[TenantContext]:
        tenant_id = self._chatbot_owners.get(chatbot_id)
        if tenant_id is None:
            return None
        return self._tenants.get(tenant_id, TenantContext(tenant_id=tenant_id))


class RedisTenantDirectory(TenantDirectory):
    """
    Reads tenant ownership written by the account service:
    ``chatbot_tenant:{chatbot_id}`` holds the tenant id and ``tenant:{tenant_id}``
    is a hash with ``tier`` and ``is_exempt`` fields.
    """
    def __init__(self, redis_client: redis.Redis, tier_limits_mb: Mapping[str, float]):
        super().__init__(tier_limits_mb)
        self._redis_client = redis_client

    def get_tenant_for_chatbot(self, chatbot_id: str) -> Optional[TenantContext]:
        try:
            tenant_id = self._redis_client.get(f"chatbot_tenant:{chatbot_id}")
            if not tenant_id:
                return None
            fields = self._redis_client.hgetall(f"tenant:{tenant_id}")
        except redis.exceptions.RedisError as e:
            logger.error(f"Failed to resolve tenant for chatbot {chatbot_id}: {e}")
            raise PersistenceError(f"Tenant lookup failed: {e}") from e

        return TenantContext(
            tenant_id=tenant_id,
            tier=fields.get("tier", "free"),
            is_exempt=fields.get("is_exempt", "false").lower() in ("1", "true", "yes"),
        )
