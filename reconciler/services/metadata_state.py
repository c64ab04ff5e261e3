from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from reconciler.logger import get_logger
from reconciler.schemas.cluster import ClusterResource
from reconciler.schemas.substrate import ROLE_CONTROLLER, ROLE_COORDINATOR
from reconciler.services.gateways import InstanceGateway

_logger = get_logger("services.metadata_state")

WARNING_CONDITION = "MetadataStateWarning"


class MigrationPhase(str, Enum):
    STORAGE_A = "StorageA"
    MIGRATING = "Migrating"
    DUAL_WRITE = "DualWrite"
    POST_MIGRATION = "PostMigration"
    PRE_CUTOVER = "PreCutover"
    STORAGE_B = "StorageB"


class MigrationIntent(str, Enum):
    DISABLED = "disabled"
    MIGRATION = "migration"
    ENABLED = "enabled"
    ROLLBACK = "rollback"


class ConfigurationState(str, Enum):
    """How operand reconcilers should configure nodes for the current phase."""

    LEGACY = "legacy"
    PRE_MIGRATION = "pre-migration"
    MIGRATION = "migration"
    POST_MIGRATION = "post-migration"
    NATIVE = "native"


@dataclass(frozen=True)
class MetadataFacts:
    controller_pool_exists: bool = False
    migration_complete: bool = False
    cutover_complete: bool = False
    legacy_store_present: bool = True


@dataclass(frozen=True)
class MigrationTransition:
    phase: MigrationPhase
    warnings: tuple[str, ...] = ()


def parse_intent(raw: Optional[str]) -> Optional[MigrationIntent]:
    """Exactly one of the four intent values; anything else counts as absent."""
    if raw is None:
        return None
    try:
        return MigrationIntent(raw)
    except ValueError:
        return None


def parse_phase(raw: Optional[str]) -> Optional[MigrationPhase]:
    if not raw:
        return None
    try:
        return MigrationPhase(raw)
    except ValueError:
        return None


def initial_phase(intent: Optional[MigrationIntent]) -> MigrationPhase:
    if intent is MigrationIntent.ENABLED:
        return MigrationPhase.STORAGE_B
    return MigrationPhase.STORAGE_A


def next_phase(
    phase: MigrationPhase,
    intent: Optional[MigrationIntent],
    facts: MetadataFacts,
) -> MigrationTransition:
    """Single transition of the metadata migration; defined for every input."""
    if phase is MigrationPhase.STORAGE_A:
        if intent is MigrationIntent.MIGRATION:
            if facts.controller_pool_exists:
                return MigrationTransition(MigrationPhase.MIGRATING)
            return MigrationTransition(
                phase,
                ("Migration requested but no controller pool exists; add one to start the migration.",),
            )
        if intent in {MigrationIntent.ENABLED, MigrationIntent.ROLLBACK}:
            return MigrationTransition(
                phase,
                (f"The '{intent.value}' intent is not allowed before a migration; use 'migration' instead.",),
            )
        return MigrationTransition(phase)

    if phase is MigrationPhase.MIGRATING:
        if intent is MigrationIntent.DISABLED:
            return MigrationTransition(MigrationPhase.STORAGE_A)
        if intent is MigrationIntent.MIGRATION and facts.migration_complete:
            return MigrationTransition(MigrationPhase.DUAL_WRITE)
        if intent is MigrationIntent.ENABLED:
            return MigrationTransition(
                phase,
                ("The 'enabled' intent is not allowed while metadata is being migrated.",),
            )
        return MigrationTransition(phase)

    if phase is MigrationPhase.DUAL_WRITE:
        if intent is MigrationIntent.ENABLED:
            return MigrationTransition(MigrationPhase.POST_MIGRATION)
        if intent is MigrationIntent.DISABLED:
            return MigrationTransition(MigrationPhase.STORAGE_A)
        return MigrationTransition(phase)

    if phase is MigrationPhase.POST_MIGRATION:
        if intent is MigrationIntent.ROLLBACK:
            return MigrationTransition(MigrationPhase.DUAL_WRITE)
        if facts.cutover_complete and facts.legacy_store_present:
            return MigrationTransition(MigrationPhase.PRE_CUTOVER)
        if intent in {MigrationIntent.MIGRATION, MigrationIntent.DISABLED}:
            return MigrationTransition(
                phase,
                (f"The '{intent.value}' intent is not allowed after migration; use 'rollback' or 'enabled'.",),
            )
        return MigrationTransition(phase)

    if phase is MigrationPhase.PRE_CUTOVER:
        if not facts.legacy_store_present:
            return MigrationTransition(MigrationPhase.STORAGE_B)
        if intent in {MigrationIntent.MIGRATION, MigrationIntent.DISABLED, MigrationIntent.ROLLBACK}:
            return MigrationTransition(
                phase,
                (f"The '{intent.value}' intent is not allowed once cutover is complete.",),
            )
        return MigrationTransition(phase)

    # StorageB is terminal
    if intent in {MigrationIntent.MIGRATION, MigrationIntent.DISABLED, MigrationIntent.ROLLBACK}:
        return MigrationTransition(
            MigrationPhase.STORAGE_B,
            (f"The '{intent.value}' intent is not allowed because metadata already lives in the new store.",),
        )
    return MigrationTransition(MigrationPhase.STORAGE_B)


def configuration_state(phase: MigrationPhase, intent: Optional[MigrationIntent]) -> ConfigurationState:
    if phase is MigrationPhase.STORAGE_A:
        if intent is MigrationIntent.MIGRATION:
            return ConfigurationState.PRE_MIGRATION
        return ConfigurationState.LEGACY
    if phase is MigrationPhase.MIGRATING:
        if intent is MigrationIntent.MIGRATION:
            return ConfigurationState.MIGRATION
        return ConfigurationState.LEGACY
    if phase is MigrationPhase.DUAL_WRITE:
        if intent is MigrationIntent.DISABLED:
            return ConfigurationState.LEGACY
        if intent is MigrationIntent.ENABLED:
            return ConfigurationState.POST_MIGRATION
        return ConfigurationState.MIGRATION
    if phase is MigrationPhase.POST_MIGRATION:
        if intent is MigrationIntent.ENABLED:
            return ConfigurationState.NATIVE
        return ConfigurationState.POST_MIGRATION
    return ConfigurationState.NATIVE


def legacy_store_enabled(phase: MigrationPhase) -> bool:
    return phase in {
        MigrationPhase.STORAGE_A,
        MigrationPhase.MIGRATING,
        MigrationPhase.DUAL_WRITE,
        MigrationPhase.POST_MIGRATION,
    }


class MetadataFactsProvider(Protocol):
    async def facts(self, resource: ClusterResource) -> MetadataFacts: ...


class InstanceMetadataFacts:
    """Reads migration facts from the roles and annotations of live instances.

    Coordinator instances are the legacy metadata store: while any remains the
    store counts as present, and the same instances are the ones the rolling
    update restarts leader last. Controller instances form the native quorum
    the metadata migrates to. Controllers report progress through ``<prefix>/metadata-migration-done`` and
    ``<prefix>/metadata-cutover-done`` set to ``true``.
    """

    def __init__(self, *, instances: InstanceGateway, annotation_prefix: str) -> None:
        self._instances = instances
        self._prefix = annotation_prefix

    @property
    def migration_done_annotation(self) -> str:
        return f"{self._prefix}/metadata-migration-done"

    @property
    def cutover_done_annotation(self) -> str:
        return f"{self._prefix}/metadata-cutover-done"

    async def facts(self, resource: ClusterResource) -> MetadataFacts:
        listed = await self._instances.list_instances(
            resource.namespace,
            {f"{self._prefix}/cluster": resource.name},
        )
        controllers = [item for item in listed if item.has_role(ROLE_CONTROLLER)]
        facts = MetadataFacts(
            controller_pool_exists=bool(controllers),
            migration_complete=any(
                item.annotations.get(self.migration_done_annotation) == "true" for item in controllers
            ),
            cutover_complete=any(
                item.annotations.get(self.cutover_done_annotation) == "true" for item in controllers
            ),
            legacy_store_present=any(item.has_role(ROLE_COORDINATOR) for item in listed),
        )
        _logger.for_cluster(resource.namespace, resource.name).debug(
            "metadata.facts",
            "Collected metadata migration facts",
            controllers=len(controllers),
            migration_complete=facts.migration_complete,
            cutover_complete=facts.cutover_complete,
            legacy_store_present=facts.legacy_store_present,
        )
        return facts


def intent_annotation(prefix: str) -> str:
    return f"{prefix}/metadata-migration"
