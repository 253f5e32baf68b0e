from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)

from db import Base
from timing import utcnow


class APIKey(Base):
    """
    Issued API keys.
    The gateway reads these on every request and bumps the usage counter.
    """
    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(64), nullable=False, unique=True, index=True)
    description = Column(String, nullable=False, default="")
    purpose = Column(String, nullable=False)  # Marketing / Audit / System
    data_classification = Column(JSON, nullable=False, default=list)
    created_by = Column(String, nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    expiration_date = Column(DateTime, nullable=True)
    last_used = Column(DateTime, nullable=True)
    usages = Column(Integer, nullable=False, default=0)
    allowed_ips = Column(JSON, nullable=False, default=list)
    rate_limit = Column(Integer, nullable=False, default=0)


class AccessLog(Base):
    """
    One row per authenticated request, written in batches by the access log buffer.
    """
    __tablename__ = "access_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    api_key = Column(String(64), nullable=False, index=True)
    endpoint = Column(String, nullable=False)
    method = Column(String, nullable=False)
    status_code = Column(Integer, nullable=False)
    query_time_ms = Column(Integer, nullable=False, default=0)
    validation_time_ms = Column(Integer, nullable=False, default=0)
    elapsed_time_ms = Column(Integer, nullable=False, default=0)
    ip_address = Column(String, nullable=False)
    user_agent = Column(String, nullable=False, default="")
    accessed_resources = Column(JSON, nullable=False, default=list)


class Customer(Base):
    __tablename__ = "customers"

    customer_id = Column(Integer, primary_key=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    country = Column(String, nullable=False)
    consent_marketing = Column(Boolean, nullable=False, default=False)
    data_classification = Column(String, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"

    transaction_id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey("customers.customer_id"), nullable=False)
    transaction_date = Column(DateTime, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False)
    data_classification = Column(String, nullable=False)
