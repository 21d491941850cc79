"""
Delegated upload protocol.

Contains the capability issuer, telemetry reconciliation, the finalization
coordinator and the models and schemas they share.
"""

from .capability import CapabilityIssuer
from .finalization import FinalizationCoordinator
from .models import (
    AssetRecord,
    Capability,
    CapabilityPermission,
    FinalizationResult,
    FinalizationState,
    IssuedCapability,
    TelemetryPoint,
    UploadIntent,
    build_object_path,
)
from .schemas import CapabilityRequest, FinalizeRequest
from .telemetry import TelemetryBatch, reconcile

__all__ = [
    "AssetRecord",
    "Capability",
    "CapabilityIssuer",
    "CapabilityPermission",
    "CapabilityRequest",
    "FinalizationCoordinator",
    "FinalizationResult",
    "FinalizationState",
    "FinalizeRequest",
    "IssuedCapability",
    "TelemetryBatch",
    "TelemetryPoint",
    "UploadIntent",
    "build_object_path",
    "reconcile",
]
