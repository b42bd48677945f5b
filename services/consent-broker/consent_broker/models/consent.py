from sqlalchemy import Column, String, DateTime, Text, JSON, Index
from sqlalchemy.dialects.postgresql import JSONB
from consent_broker.db.base import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in dev/tests)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")

class ConsentRecord(Base):
    __tablename__ = "consent_sessions"

    consent_id = Column(String(64), primary_key=True)
    consent_type = Column(String(32), nullable=True)           # single-payment, variable-on-demand-payment, data-sharing
    bank_label = Column(Text, nullable=True)
    redirect_url = Column(Text, nullable=True)
    code_verifier = Column(Text, nullable=True)
    status = Column(String(32), nullable=True, index=True)     # redirect_ready, authorization_code_received, ...
    source = Column(String(32), nullable=True)

    auth_code = Column(Text, nullable=True)
    issuer = Column(Text, nullable=True)
    state_payload = Column(JsonColumn, nullable=True)
    callback_query = Column(JsonColumn, nullable=True)
    callback_error = Column(JsonColumn, nullable=True)
    callback_received_at = Column(DateTime(timezone=True), nullable=True)

    extra_metadata = Column("metadata", JsonColumn, nullable=True)  # column named "metadata"
    field_versions = Column(JsonColumn, nullable=True)              # field -> ISO timestamp of last accepted write

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

# latest-authorized lookup
Index("idx_consent_sessions_callback", ConsentRecord.callback_received_at)
Index("idx_consent_sessions_updated_at", ConsentRecord.updated_at)
