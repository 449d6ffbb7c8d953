"""Per-tenant notification provider settings."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, String, Uuid
from sqlalchemy.sql import func

from app.core.database import Base


class TenantIntegration(Base):
    __tablename__ = "tenant_integrations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False, unique=True, index=True)

    email_provider_url = Column(String, nullable=True)
    email_api_key = Column(String, nullable=True)
    email_from = Column(String, nullable=True)
    email_is_configured = Column(Boolean, nullable=False, default=False)
    email_is_active = Column(Boolean, nullable=False, default=False)

    sms_provider_url = Column(String, nullable=True)
    sms_api_key = Column(String, nullable=True)
    sms_from_number = Column(String, nullable=True)
    sms_is_configured = Column(Boolean, nullable=False, default=False)
    sms_is_active = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def email_enabled(self) -> bool:
        return bool(self.email_is_configured and self.email_is_active and self.email_provider_url)

    @property
    def sms_enabled(self) -> bool:
        return bool(self.sms_is_configured and self.sms_is_active and self.sms_provider_url)
