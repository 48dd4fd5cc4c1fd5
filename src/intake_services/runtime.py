"""Process wiring: shared dependencies and the data flows built on them."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from intake_common.config import IntakeSettings, load_settings
from intake_common.errors import IntakeError, ValidationError, status_for
from intake_common.infrastructure import DatabaseManager, ObjectStorageClient, ObjectStore
from intake_common.logging_config import setup_logging

from .batch import BatchCoordinator, BatchInfo, DocType, validate_row_count, validate_rows
from .capabilities import (
    CapabilityRegistry,
    HolderDownloadCapability,
    HolderUploadCapability,
    NihCapability,
    download_holder_id,
)
from .clients import HttpIssuerKeyResolver, IssuanceClient, IssuerClient, PostboxClient
from .consent import ConsentValidator
from .credentials import CredentialValidator
from .files import SubmissionFiles
from .issuance import CredentialIssuanceProcessor
from .mapping import MapperCache, MapperStore, MappingEngine
from .metadata import MetadataGenerator
from .organizations import EntityConfig, OrganizationStore, ProfileStore
from .reports import ReportService
from .submission import SubmissionAssembler, SubmissionOutcome, SubmissionRequest
from .verification import VerifierContextRegistry, default_registry

logger = logging.getLogger(__name__)

NIH_CONSENT_KEY = "consentReceiptID"
DEFAULT_CREDENTIAL_TYPE = "default"


@dataclass(slots=True)
class ServiceDependencies:
    settings: IntakeSettings
    database: DatabaseManager
    object_store: ObjectStore
    postbox: PostboxClient
    issuer: IssuerClient
    issuance: IssuanceClient
    shutdown_hooks: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def shutdown(self) -> None:
        if self.shutdown_hooks:
            await asyncio.gather(
                *(hook() for hook in reversed(self.shutdown_hooks)),
                return_exceptions=True,
            )
        await self.postbox.aclose()
        await self.issuer.aclose()
        await self.issuance.aclose()
        await self.database.dispose()

    def register_shutdown_hook(self, hook: Callable[[], Awaitable[None]]) -> None:
        self.shutdown_hooks.append(hook)


async def build_dependencies_async(
    settings: IntakeSettings | None = None,
    object_store: ObjectStore | None = None,
) -> ServiceDependencies:
    settings = settings or load_settings()
    database = DatabaseManager(settings.database_config())
    await database.create_all()
    outbound = settings.outbound
    return ServiceDependencies(
        settings=settings,
        database=database,
        object_store=object_store or ObjectStorageClient(settings.object_storage_config()),
        postbox=PostboxClient.from_settings(outbound, outbound.postbox_url),
        issuer=IssuerClient.from_settings(outbound, outbound.issuer_api_url),
        issuance=IssuanceClient.from_settings(outbound, outbound.issuer_api_url),
    )


class IntakeService:
    """Entry points for holder submissions, batch uploads and reports."""

    def __init__(self, deps: ServiceDependencies, disabled_verifiers: Sequence[str] = ()) -> None:
        self.deps = deps
        settings = deps.settings
        self.organizations = OrganizationStore(deps.database)
        self.profiles = ProfileStore(deps.database)
        self.mappers = MapperStore(deps.database, MapperCache.from_settings(settings.cache))
        self.engine = MappingEngine(self.mappers)
        self.metadata = MetadataGenerator(self.engine)
        self.contexts = VerifierContextRegistry(
            lambda: default_registry(disabled_verifiers),
            HttpIssuerKeyResolver(deps.issuer),
            cache_settings=settings.cache,
        )
        self.coordinator = BatchCoordinator(deps.database, settings.csv)
        self.reports = ReportService(deps.database)
        self.files = SubmissionFiles(
            self.organizations, self.profiles, self.contexts, deps.object_store, deps.database
        )
        self.capabilities = self._build_capabilities()

    def _assembler(self, consent_key: str, with_metadata: bool) -> SubmissionAssembler:
        deps = self.deps
        metadata = self.metadata if with_metadata else None
        return SubmissionAssembler(
            profiles=self.profiles,
            postbox=deps.postbox,
            contexts=self.contexts,
            consent=ConsentValidator(deps.settings.consent, metadata, deps.postbox),
            credentials=CredentialValidator(self.engine, metadata),
            object_store=deps.object_store,
            database=deps.database,
            consent_key=consent_key,
            append_metadata=with_metadata,
        )

    def _build_capabilities(self) -> CapabilityRegistry:
        registry = CapabilityRegistry()
        registry.register(HolderUploadCapability(self.engine, self._assembler("consentId", with_metadata=True)))
        processor = CredentialIssuanceProcessor(
            self.profiles, self.engine, self.deps.issuance, self.deps.postbox, download_holder_id
        )
        registry.register(HolderDownloadCapability(self.engine, self.coordinator, processor))
        registry.register(NihCapability(self.engine, self._assembler(NIH_CONSENT_KEY, with_metadata=False)))
        return registry

    async def startup(self) -> None:
        entities = await self.organizations.list_entities()
        loaded = await self.contexts.preload(entities)
        logger.info("Preloaded %d verifier contexts for %d organizations", loaded, len(entities))

    async def submit_data(
        self,
        entity_name: str,
        body: dict[str, Any],
        authorization: str | None = None,
        tx_id: str | None = None,
        validate_signature: bool = True,
    ) -> SubmissionOutcome:
        tx_id = tx_id or str(uuid.uuid4())
        try:
            entity = await self.organizations.get_entity(entity_name)
            capability = self.capabilities.for_entity(entity)
            request = SubmissionRequest.from_dict(body, authorization)
        except IntakeError as e:
            logger.error("[%s] Failed to submit data: %s", tx_id, e.message)
            return SubmissionOutcome(status_for(e), e.message)
        return await capability.submit_entity_data(request, entity, tx_id, validate_signature)

    def _credential_type(self, entity: EntityConfig, credential_type: str | None) -> str:
        if not credential_type:
            return DEFAULT_CREDENTIAL_TYPE
        entity.download_mapping(credential_type)
        return credential_type

    async def upload_data(
        self,
        entity_name: str,
        rows: list[dict[str, Any]],
        file_name: str | None = None,
        credential_type: str | None = None,
        headers: Sequence[str] | None = None,
        authorization: str | None = None,
        tx_id: str | None = None,
    ) -> dict[str, Any]:
        """Queue ``rows`` and start processing them in the background.

        Returns as soon as the rows are durably queued; the batch report is
        written when processing finishes.
        """
        tx_id = tx_id or str(uuid.uuid4())
        csv = self.deps.settings.csv
        try:
            entity = await self.organizations.get_entity(entity_name)
            capability = self.capabilities.for_entity(entity)
            cred_type = self._credential_type(entity, credential_type)
            validate_row_count(rows, csv.row_max)
            if headers is not None:
                validation = validate_rows(rows, headers, csv.batch_max_error_threshold, tx_id)
                if not validation.ok:
                    return {"status": 400, "message": validation.message, "invalidRows": validation.invalid_rows}
                rows = validation.validated_rows
            if not rows:
                msg = "No rows to upload"
                raise ValidationError(msg)
            items = await self.coordinator.upload_batch_items_for_processing(
                entity.entity, tx_id, DocType.TESTRESULT_ITEM, rows, tx_id
            )
        except IntakeError as e:
            logger.error("[%s] Failed to upload data: %s", tx_id, e.message)
            return {"status": status_for(e), "message": e.message}

        batch = BatchInfo(batch_id=tx_id, file_name=file_name or "", items=items, authorization=authorization)
        logger.debug("[%s] Attempting to upload data for organization %s", tx_id, entity.entity)
        self.coordinator.schedule(capability.upload_entity_data(entity, batch, cred_type, tx_id), tx_id)
        logger.info("[%s] Successfully received data for uploading for organization %s", tx_id, entity.entity)
        return {"status": 200, "message": f"Data received for uploading: {tx_id}", "batchID": tx_id}

    async def get_report(
        self, entity_name: str, start: str, end: str, offset: Any = 0, tx_id: str = ""
    ) -> dict[str, Any]:
        return await self.reports.get_report(entity_name, start, end, offset, tx_id)

    async def get_batch_report(self, entity_name: str, batch_id: str, **kwargs: Any) -> dict[str, Any]:
        return await self.reports.get_batch_report(entity_name, batch_id, DocType.TESTRESULT_BATCH_REPORT, **kwargs)

    async def get_all_batches_report(self, entity_name: str, **kwargs: Any) -> dict[str, Any]:
        return await self.reports.get_all_batches_report(entity_name, DocType.TESTRESULT_BATCH_REPORT, **kwargs)


async def create_service(
    settings: IntakeSettings | None = None, object_store: ObjectStore | None = None
) -> IntakeService:
    settings = settings or load_settings()
    setup_logging(settings.service_name)
    deps = await build_dependencies_async(settings, object_store)
    service = IntakeService(deps)
    await service.startup()
    return service
