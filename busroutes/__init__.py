"""Bus route documents -> geocoded route JSON pipeline.

Public API -- all symbols that tests and external code import live here.
Internally the code is split across focused submodules; this file
re-exports the stable public surface so ``from busroutes import X`` works.
"""

from .config import PipelineConfig, load_config
from .coordinator import (
    STATUS_COMPLETE,
    STATUS_CONTINUED,
    STATUS_LOCKED,
    RunCoordinator,
    RunSummary,
)
from .generative import (
    GeminiClient,
    GenerativeExtractor,
    build_prompt,
    parse_routes,
)
from .geocoding import GeocodingCache, GoogleGeocoder, build_query
from .models import (
    ConfigurationError,
    ExtractionQualityError,
    GeocodingError,
    Period,
    PipelineError,
    PipelineState,
    RouteArtifact,
    RouteDraft,
    RouteType,
    StopRecord,
    StudentRecord,
    TransientServiceError,
    WorkItem,
    fingerprint,
)
from .normalize import (
    classify_period,
    normalize_bus_number,
    normalize_phone_numbers,
    normalize_route,
    normalize_routes,
)
from .ocr import DoclingOcrService, DriveOcrService, create_ocr_converter
from .publisher import (
    Publisher,
    build_artifact,
    canonical_artifact_name,
    canonical_school_name,
    load_route_stops,
)
from .retry import RetryPolicy, call_with_retry, is_transient_error
from .sources import (
    DriveDocumentStore,
    LocalDocumentStore,
    SourceFile,
    authenticate_drive,
    build_drive_services,
)
from .structured import (
    ExtractionHeuristics,
    StructuredTextExtractor,
    marked_lines,
    parse_clock_minutes,
)
from .utils import (
    BUS_STOPS_FOLDER_NAME,
    UNASSIGNED_BUS,
    ContinuationScheduler,
    JsonStateRepository,
    RunLock,
)
from .work_queue import build_work_queue, split_bus_prefix

__all__ = [
    # Models
    "RouteType",
    "Period",
    "WorkItem",
    "StudentRecord",
    "StopRecord",
    "RouteDraft",
    "RouteArtifact",
    "PipelineState",
    "fingerprint",
    # Errors
    "PipelineError",
    "ConfigurationError",
    "ExtractionQualityError",
    "TransientServiceError",
    "GeocodingError",
    # Constants
    "BUS_STOPS_FOLDER_NAME",
    "UNASSIGNED_BUS",
    # Config
    "PipelineConfig",
    "load_config",
    # Retry
    "RetryPolicy",
    "call_with_retry",
    "is_transient_error",
    # State / lock / continuation
    "JsonStateRepository",
    "RunLock",
    "ContinuationScheduler",
    # Sources
    "SourceFile",
    "DriveDocumentStore",
    "LocalDocumentStore",
    "authenticate_drive",
    "build_drive_services",
    # Work queue
    "build_work_queue",
    "split_bus_prefix",
    # Structured extraction
    "ExtractionHeuristics",
    "StructuredTextExtractor",
    "marked_lines",
    "parse_clock_minutes",
    # OCR + generative extraction
    "create_ocr_converter",
    "DriveOcrService",
    "DoclingOcrService",
    "GeminiClient",
    "GenerativeExtractor",
    "build_prompt",
    "parse_routes",
    # Normalization
    "normalize_bus_number",
    "normalize_phone_numbers",
    "classify_period",
    "normalize_route",
    "normalize_routes",
    # Geocoding
    "GoogleGeocoder",
    "GeocodingCache",
    "build_query",
    # Publishing
    "Publisher",
    "build_artifact",
    "canonical_school_name",
    "canonical_artifact_name",
    "load_route_stops",
    # Coordinator
    "RunCoordinator",
    "RunSummary",
    "STATUS_LOCKED",
    "STATUS_CONTINUED",
    "STATUS_COMPLETE",
]
