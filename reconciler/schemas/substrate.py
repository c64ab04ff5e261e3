from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

ROLE_DATA = "data"
# Nodes of the legacy metadata store. They coordinate the data instances and are rolled leader last.
ROLE_COORDINATOR = "coordinator"
# Nodes of the native metadata quorum that replaces the legacy store.
ROLE_CONTROLLER = "controller"


class OwnerReference(BaseModel):
    api_version: str = "reconciler.io/v1"
    kind: str = "Cluster"
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False


class SecretRecord(BaseModel):
    namespace: str
    name: str
    data: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    owner_reference: Optional[OwnerReference] = None


class InstanceRecord(BaseModel):
    name: str
    roles: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    state: str = "unknown"

    def has_role(self, role: str) -> bool:
        return role in self.roles
