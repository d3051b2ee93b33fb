import logging

from kb_indexer.exceptions import QuotaExceededError
from kb_indexer.models.tenant import QuotaDecision
from kb_indexer.services.job_store import JobStore
from kb_indexer.services.tenant_service import TenantDirectory
from kb_indexer.utils.text_utils import content_size_mb

logger = logging.getLogger(__name__)

class QuotaGuard:
    """
    Gatekeeper for per-tenant knowledge base size. Every size change goes through
    the store's atomic check-and-update, so concurrent reservations can never
    push a tenant past its limit.
    """
    def __init__(self, store: JobStore, tenants: TenantDirectory):
        self.store = store
        self.tenants = tenants

    def try_reserve(self, tenant_id: str, delta_mb: float, limit_mb: float) -> QuotaDecision:
        return self.store.atomic_check_and_update_knowledge_base_size(tenant_id, delta_mb, limit_mb)

    def reserve_for_chatbot(self, chatbot_id: str, content: str) -> QuotaDecision:
        """
        Reserves room for ``content`` in the knowledge base of the chatbot's tenant.

        Raises:
            QuotaExceededError: the reservation would exceed the tenant's tier limit.
        """
        delta_mb = content_size_mb(content)
        tenant = self.tenants.get_tenant_for_chatbot(chatbot_id)

        if tenant is None:
            logger.warning(f"No tenant found for chatbot {chatbot_id}, indexing without a quota check.")
            return QuotaDecision(approved=True, current_size_mb=0.0)

        if tenant.is_exempt:
            logger.debug(f"Tenant {tenant.tenant_id} is exempt from knowledge base limits.")
            return QuotaDecision(approved=True, current_size_mb=self.store.get_knowledge_base_size(tenant.tenant_id))

        limit_mb = self.tenants.knowledge_base_limit_mb(tenant.tier)
        decision = self.try_reserve(tenant.tenant_id, delta_mb, limit_mb)
        if not decision.approved:
            logger.warning(
                f"Quota rejected for tenant {tenant.tenant_id} ({tenant.tier}): "
                f"{decision.current_size_mb:.2f}MB + {delta_mb:.4f}MB > {limit_mb:g}MB"
            )
            raise QuotaExceededError(delta_mb, decision.current_size_mb, limit_mb, tenant.tier)
        return decision

    def release_for_chatbot(self, chatbot_id: str, content: str) -> None:
        """Gives back a reservation made by ``reserve_for_chatbot`` for content that was never stored."""
        tenant = self.tenants.get_tenant_for_chatbot(chatbot_id)
        if tenant is None or tenant.is_exempt:
            return
        delta_mb = content_size_mb(content)
        limit_mb = self.tenants.knowledge_base_limit_mb(tenant.tier)
        decision = self.try_reserve(tenant.tenant_id, -delta_mb, limit_mb)
        logger.info(f"Released {delta_mb:.4f}MB for tenant {tenant.tenant_id}, now at {decision.current_size_mb:.2f}MB.")
