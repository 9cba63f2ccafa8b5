"""Application context for API requests.

Combines the resolved tenant, logging and request metadata into a single
injectable dependency.
"""

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict

from billflow import schemas
from billflow.core.logging import ContextualLogger


class ApiContext(BaseModel):
    """Unified context for API requests."""

    model_config = ConfigDict(arbitrary_types_allowed=True)  # For ContextualLogger

    # Request metadata
    request_id: str

    # Tenant the request acts for
    tenant: schemas.Tenant
    auth_method: str  # "tenant_header", "system"

    # Contextual logger with all dimensions pre-configured
    logger: ContextualLogger

    def __str__(self) -> str:
        """String representation for logging."""
        return (
            f"ApiContext(request_id={self.request_id[:8]}..., "
            f"method={self.auth_method}, tenant={self.tenant.id})"
        )

    def to_serializable_dict(self) -> Dict[str, Any]:
        """Convert to a serializable dictionary."""
        return {
            "request_id": self.request_id,
            "tenant_id": str(self.tenant.id),
            "tenant": self.tenant.model_dump(mode="json"),
            "auth_method": self.auth_method,
        }
