from datetime import datetime
from enum import Enum
from ipaddress import IPv4Address, IPv6Address
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ApiKeyPurpose(str, Enum):
    MARKETING = "Marketing"
    AUDIT = "Audit"
    SYSTEM = "System"


class DataClassification(str, Enum):
    PUBLIC = "Public"
    INTERNAL = "Internal"
    CONFIDENTIAL = "Confidential"
    RESTRICTED = "Restricted"


# =========================
# API keys
# =========================

class ApiKeyRecord(BaseModel):
    """
    Detached copy of an api_keys row, attached to request state after authentication.
    """
    model_config = ConfigDict(from_attributes=True, frozen=True)

    key: str
    description: str
    purpose: ApiKeyPurpose
    data_classification: List[DataClassification]
    created_by: str
    created_at: datetime
    updated_at: datetime
    expiration_date: Optional[datetime] = None
    last_used: Optional[datetime] = None
    usages: int = 0
    allowed_ips: List[str] = Field(default_factory=list)
    rate_limit: int = 0


class CreateApiKeyRequest(BaseModel):
    purpose: ApiKeyPurpose
    description: Optional[str] = None
    allowed_ips: Optional[List[Union[IPv4Address, IPv6Address]]] = None
    data_classification: List[DataClassification] = Field(min_length=1)


class CreateApiKeyResponse(BaseModel):
    apiKey: str
    message: str


# =========================
# Access logs
# =========================

class AccessLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    api_key: str
    endpoint: str
    method: str
    status_code: int
    query_time_ms: int = 0
    validation_time_ms: int = 0
    elapsed_time_ms: int = 0
    ip_address: str
    user_agent: str = ""
    accessed_resources: List[str] = Field(default_factory=list)
