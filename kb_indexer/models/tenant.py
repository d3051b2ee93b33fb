from pydantic import BaseModel


class TenantContext(BaseModel):
    """The account that owns a chatbot, as seen by the quota guard."""
    tenant_id: str
    tier: str = "free"
    is_exempt: bool = False # Administrative override, bypasses quota checks


class QuotaDecision(BaseModel):
    approved: bool
    current_size_mb: float
