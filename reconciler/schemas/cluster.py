from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExpirationPolicy(str, Enum):
    RENEW_CERTIFICATE = "renew-certificate"
    REPLACE_KEY = "replace-key"


class CertificateAuthoritySpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    generate_certificate_authority: bool = True
    generate_secret_owner_reference: bool = True
    validity_days: int = Field(default=365, ge=1)
    renewal_days: int = Field(default=30, ge=0)
    certificate_expiration_policy: ExpirationPolicy = ExpirationPolicy.RENEW_CERTIFICATE


class ClusterSpec(BaseModel):
    cluster_ca: CertificateAuthoritySpec = Field(default_factory=CertificateAuthoritySpec)
    clients_ca: CertificateAuthoritySpec = Field(default_factory=CertificateAuthoritySpec)
    maintenance_time_windows: List[str] = Field(default_factory=list)


class StatusCondition(BaseModel):
    type: str
    status: str = "True"
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None


class ClusterStatus(BaseModel):
    observed_generation: int = 0
    conditions: List[StatusCondition] = Field(default_factory=list)
    metadata_state: Optional[str] = None
    cluster_ca_generation: Optional[int] = None
    clients_ca_generation: Optional[int] = None
    cluster_ca_key_generation: Optional[int] = None
    clients_ca_key_generation: Optional[int] = None

    def ready_condition(self) -> Optional[StatusCondition]:
        for condition in self.conditions:
            if condition.type in {"Ready", "NotReady"}:
                return condition
        return None


class ClusterResource(BaseModel):
    namespace: str
    name: str
    uid: str = ""
    generation: int = 1
    annotations: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    status: Optional[ClusterStatus] = None

    @property
    def key(self) -> tuple[str, str]:
        return self.namespace, self.name


class ClusterStatusOut(BaseModel):
    namespace: str
    name: str
    status: Optional[ClusterStatus] = None


class ClusterApply(BaseModel):
    uid: str = ""
    annotations: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    spec: ClusterSpec = Field(default_factory=ClusterSpec)


class ReconcileOut(BaseModel):
    namespace: str
    name: str
    ok: bool
    error: Optional[str] = None
    status: ClusterStatus
