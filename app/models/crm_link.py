from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from app.core.database import Base


class CrmLink(Base):
    """Binding between a tenant and a GoHighLevel location, with its OAuth credentials."""
    __tablename__ = "crm_links"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String, ForeignKey("tenants.id"), nullable=False, index=True)

    # External CRM identifiers
    company_id = Column(String, nullable=False, index=True)
    location_id = Column(String, nullable=False, index=True)
    external_user_id = Column(String)  # GHL user who installed the app
    company_name = Column(String)
    location_name = Column(String)

    # OAuth credentials
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime)
    scopes = Column(Text)
    last_refreshed_at = Column(DateTime)

    # Lifecycle
    claimed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    revoked_at = Column(DateTime)  # set on uninstall; row is kept

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    tenant = relationship("Tenant", back_populates="crm_links")
    instances = relationship("MessagingInstance", back_populates="crm_link")

    __table_args__ = (
        # One live claim per location across all tenants
        Index(
            "uq_crm_links_active_location",
            "location_id",
            unique=True,
            postgresql_where=text("revoked_at IS NULL"),
            sqlite_where=text("revoked_at IS NULL"),
        ),
    )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_token or self.refresh_token)
