"""
NLP Pipeline Orchestration Module

Runs documents through pluggable NLP backends (sentence splitting,
tokenization, POS tagging, named entity recognition) behind one interface:
- Per-backend language and stage support, checked before any backend runs
- Prerequisite stage resolution
- Lazy, shared per-language backend initialization with explicit release
- Normalized, backend-agnostic annotations

Quick Start:
    from nlp_pipeline import PipelineOrchestrator, NlpStage, EntityCategory

    async with PipelineOrchestrator() as pipeline:
        annotation = await pipeline.submit(
            "John works at Acme.", "en", NlpStage.NER,
            {EntityCategory.PERSON, EntityCategory.ORGANIZATION}
        )
        for entity in annotation.entities():
            print(entity.category, entity.start, entity.end)
"""

from .exceptions import (
    ErrorKind,
    PipelineError,
    ConfigurationError,
    UnsupportedLanguageOrStageError,
    InvalidRequestError,
    BackendInitError,
    BackendProcessError,
    PipelineTimeoutError,
    PipelineShutdownError,
    BackendNotReadyError
)

from .stages import (
    NlpStage,
    StageDependencyGraph,
    DEFAULT_STAGE_DEPENDENCIES
)

from .language import (
    Language,
    LanguageSupportMatrix
)

from .annotation import (
    EntityCategory,
    Span,
    Annotation,
    AnnotationBuilder
)

from .base import (
    NlpBackend,
    BackendOutput,
    RawAnnotation,
    OffsetUnit
)

from .registry import (
    BackendRegistry,
    BackendRegistration,
    get_registry
)

from .lifecycle import (
    PipelineLifecycleManager,
    BackendStatus
)

from .orchestrator import (
    PipelineOrchestrator,
    PipelineRequest
)

__all__ = [
    # Errors
    "ErrorKind",
    "PipelineError",
    "ConfigurationError",
    "UnsupportedLanguageOrStageError",
    "InvalidRequestError",
    "BackendInitError",
    "BackendProcessError",
    "PipelineTimeoutError",
    "PipelineShutdownError",
    "BackendNotReadyError",

    # Stages and languages
    "NlpStage",
    "StageDependencyGraph",
    "DEFAULT_STAGE_DEPENDENCIES",
    "Language",
    "LanguageSupportMatrix",

    # Annotation model
    "EntityCategory",
    "Span",
    "Annotation",
    "AnnotationBuilder",

    # Backend contract
    "NlpBackend",
    "BackendOutput",
    "RawAnnotation",
    "OffsetUnit",
    "BackendRegistry",
    "BackendRegistration",
    "get_registry",

    # Orchestration
    "PipelineLifecycleManager",
    "BackendStatus",
    "PipelineOrchestrator",
    "PipelineRequest",
]
