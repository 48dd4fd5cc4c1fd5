"""Read side of stored submissions: listing, downloading and deleting bundles.

Organization administrators address stored files by name. Holders fetch their
own files by signing a ``cosAccess`` grant with the key they submitted with;
the holder's files are found through the markers written at submission time.
"""

from __future__ import annotations

import gzip
import json
import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from intake_common.errors import IntakeError, NotFoundError, ValidationError, error_message, status_for
from intake_common.infrastructure import CosInfoRepository, DatabaseManager, ObjectStore

from .organizations import OrganizationStore, ProfileStore
from .verification import VerifierContextRegistry

logger = logging.getLogger(__name__)

DEFAULT_RANGE_DAYS = 30
PUBLIC_KEY_TYPES = ("pkcs1", "spki")
RETURN_FORMATS = ("json", "zip")
NO_DOCUMENTS = "No documents found"


def _parse_day(value: str) -> date:
    try:
        return datetime.fromisoformat(value).date()
    except ValueError as e:
        msg = f"Invalid date {value}"
        raise ValidationError(msg) from e


def holder_date_range(
    start_date: str | None = None, end_date: str | None = None, today: date | None = None
) -> tuple[int, int]:
    """Unix-second bounds covering whole UTC days.

    A missing bound lies ``DEFAULT_RANGE_DAYS`` from the given one. Without
    either, the range ends today.
    """
    window = timedelta(days=DEFAULT_RANGE_DAYS)
    start = _parse_day(start_date) if start_date else None
    end = _parse_day(end_date) if end_date else None
    if start is None and end is None:
        end = today or datetime.now(timezone.utc).date()
    if start is None:
        start = end - window
    if end is None:
        end = start + window
    first = datetime.combine(start, time.min, tzinfo=timezone.utc)
    after_last = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return int(first.timestamp()), int(after_last.timestamp()) - 1


def _error(status: int, message: str) -> dict[str, Any]:
    return {"status": status, "message": message}


class SubmissionFiles:
    def __init__(
        self,
        organizations: OrganizationStore,
        profiles: ProfileStore,
        contexts: VerifierContextRegistry,
        object_store: ObjectStore,
        database: DatabaseManager,
    ) -> None:
        self._organizations = organizations
        self._profiles = profiles
        self._contexts = contexts
        self._object_store = object_store
        self._database = database

    async def _organization_problem(self, entity: str) -> str:
        if not entity:
            return "Missing organization"
        try:
            await self._organizations.get_entity(entity)
        except NotFoundError:
            return f"Invalid organization: {entity}"
        return ""

    async def list_files(self, entity: str, max_keys: int | None = None, tx_id: str = "") -> dict[str, Any]:
        problem = await self._organization_problem(entity)
        if problem:
            return _error(400, problem)
        try:
            names = await self._object_store.list_objects(entity)
        except IntakeError as e:
            logger.error("[%s] Error listing files for organization %s: %s", tx_id, entity, e.message)
            return _error(status_for(e), e.message)
        if max_keys:
            names = names[:max_keys]
        message = f"Successfully retrieved file names for organization {entity}"
        logger.info("[%s] %s", tx_id, message)
        return {"status": 200, "message": message, "payload": names}

    async def get_file(self, entity: str, file_name: str, tx_id: str = "") -> dict[str, Any]:
        if not file_name:
            return _error(400, "Missing filename")
        problem = await self._organization_problem(entity)
        if problem:
            return _error(400, problem)
        try:
            content = await self._object_store.get_object(entity, file_name)
        except IntakeError as e:
            message = f"Error retrieving file {file_name} for organization {entity} - {e.message}"
            logger.error("[%s] %s", tx_id, message)
            return _error(status_for(e), message)
        logger.info("[%s] Retrieved file %s for organization %s", tx_id, file_name, entity)
        return {
            "status": 200,
            "message": f"Successfully retrieved file {file_name} for organization {entity}",
            "fileName": file_name,
            "contentType": "application/json",
            "content": content,
        }

    async def delete_file(self, entity: str, file_name: str, tx_id: str = "") -> dict[str, Any]:
        if not file_name:
            return _error(400, "Missing filename")
        problem = await self._organization_problem(entity)
        if problem:
            return _error(400, problem)
        try:
            await self._object_store.delete_object(entity, file_name)
        except IntakeError as e:
            message = f"Error deleting file {file_name} - {e.message}"
            logger.error("[%s] %s", tx_id, message)
            return _error(status_for(e), message)
        message = f"Successfully deleted file {file_name} for organization {entity}"
        logger.info("[%s] %s", tx_id, message)
        return {"status": 200, "message": message}

    async def _holder_contents(self, entity: str, holder_id: str, start: int, end: int, tx_id: str) -> list[Any]:
        async with self._database.session_scope() as session:
            markers = await CosInfoRepository(session).query_by_holder(entity, holder_id, start, end)
        contents = []
        for marker in markers:
            try:
                raw = await self._object_store.get_object(entity, marker.document_id)
            except NotFoundError:
                logger.warning("[%s] File %s of holder %s is no longer stored", tx_id, marker.document_id, holder_id)
                continue
            contents.append(json.loads(raw))
        return contents

    async def get_files_by_holder(
        self,
        entity: str,
        holder_id: str,
        signature_value: str | None,
        public_key_type: str | None,
        start_date: str | None = None,
        end_date: str | None = None,
        return_format: str | None = None,
        tx_id: str | None = None,
    ) -> dict[str, Any]:
        """Return every bundle ``holder_id`` submitted in the date range.

        ``signature_value`` is the holder's RSA-PSS signature over the grant
        ``{"proof":{"creator":<holderId>}}``; ``holder_id`` is the holder's
        public key. The files come back as a JSON list or as a gzip archive
        of that list.
        """
        tx_id = tx_id or str(uuid.uuid4())
        return_format = return_format or "zip"
        if not entity:
            return _error(400, "Missing entity")
        if not holder_id:
            return _error(400, "Missing holderId")
        if not signature_value:
            return _error(400, "Missing signatureValue")
        if public_key_type not in PUBLIC_KEY_TYPES:
            return _error(400, "Missing publicKeyType")
        if return_format not in RETURN_FORMATS:
            return _error(400, f"format must be one of the following: {','.join(RETURN_FORMATS)}")
        try:
            start, end = holder_date_range(start_date, end_date)
        except ValidationError as e:
            return _error(400, e.message)

        try:
            await self._profiles.get_profile(entity, holder_id)
        except NotFoundError as e:
            logger.warning("[%s] %s", tx_id, e.message)
            return _error(404, f"Invalid holder ID {holder_id}: {e.message}")
        try:
            config = await self._organizations.get_entity(entity)
        except NotFoundError:
            return _error(400, f"Invalid organization {entity}, no configuration found")

        grant = {"cosAccess": {"proof": {"creator": holder_id, "signatureValue": signature_value}}}
        context = await self._contexts.get(config)
        result = await context.verify(
            grant, {"publicKey": holder_id, "publicKeyType": public_key_type}, return_credential=False
        )
        if result.error:
            logger.error("[%s] Access grant verification error: %s", tx_id, result.message)
            return _error(500, result.message)
        if not result.success:
            logger.warning("[%s] Invalid access grant signature for holder %s", tx_id, holder_id)
            return _error(401, f"Invalid signature: {result.message}")

        try:
            contents = await self._holder_contents(entity, holder_id, start, end, tx_id)
        except (IntakeError, SQLAlchemyError, ValueError) as e:
            message = f"Error retrieving files for organization {entity} by holder {holder_id} - {error_message(e)}"
            logger.error("[%s] %s", tx_id, message)
            return _error(400, message)
        if not contents:
            logger.info("[%s] No files found for holder %s in organization %s", tx_id, holder_id, entity)
            return _error(404, NO_DOCUMENTS)

        if return_format == "json":
            return {
                "status": 200,
                "message": f"Successfully retrieved files for organization {entity} by holder {holder_id}",
                "payload": contents,
            }
        file_name = f"{tx_id}.zip"
        logger.info("[%s] Returning %d files for holder %s as %s", tx_id, len(contents), holder_id, file_name)
        return {
            "status": 200,
            "message": f"Successfully retrieved file {file_name} for organization {entity} by holder {holder_id}",
            "fileName": file_name,
            "contentType": "application/zip",
            "content": gzip.compress(json.dumps(contents).encode("utf-8")),
        }
