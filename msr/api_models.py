from __future__ import annotations

from pydantic import AliasChoices, BaseModel, Field

from .models import UpgradeAction


class UpgradeServiceRequest(BaseModel):
    # The UI posts {"containerName": ..., "action": ...}
    service: str = Field(
        ...,
        validation_alias=AliasChoices("service", "containerName", "identity"),
        description="Catalog identity of the service",
    )
    action: UpgradeAction = Field(UpgradeAction.PULL_IMAGE, description="pull_image|rebuild_container|restart_service")


class GlobalUpgradeRequest(BaseModel):
    action: UpgradeAction = Field(UpgradeAction.FULL_UPGRADE)
