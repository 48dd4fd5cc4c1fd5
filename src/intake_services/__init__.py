"""Credential submission and verification pipeline for onboarded organizations."""

__version__ = "0.1.0"

from .batch import BatchCoordinator, BatchInfo, BatchItem, DocType, RowResult
from .capabilities import (
    CapabilityRegistry,
    HolderDownloadCapability,
    HolderUploadCapability,
    NihCapability,
    OrganizationCapability,
)
from .consent import ConsentValidator, HolderContext, check_consent_window
from .credentials import CredentialValidator
from .files import SubmissionFiles
from .organizations import EntityConfig, HolderProfile, SymmetricKey
from .submission import SubmissionAssembler, SubmissionOutcome, SubmissionRequest

__all__ = [
    "BatchCoordinator",
    "BatchInfo",
    "BatchItem",
    "CapabilityRegistry",
    "ConsentValidator",
    "CredentialValidator",
    "DocType",
    "EntityConfig",
    "HolderContext",
    "HolderDownloadCapability",
    "HolderProfile",
    "HolderUploadCapability",
    "NihCapability",
    "OrganizationCapability",
    "RowResult",
    "SubmissionAssembler",
    "SubmissionFiles",
    "SubmissionOutcome",
    "SubmissionRequest",
    "SymmetricKey",
    "check_consent_window",
]
