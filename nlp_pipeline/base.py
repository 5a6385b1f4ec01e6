"""
Base abstract interface for NLP backends
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set

from nlp_pipeline.annotation import EntityCategory
from nlp_pipeline.exceptions import BackendNotReadyError
from nlp_pipeline.language import Language, LanguageSupportMatrix
from nlp_pipeline.stages import NlpStage


class OffsetUnit(Enum):
    """Unit a backend counts offsets in"""
    CHAR = "char"      # Python string index (code point)
    UTF16 = "utf16"    # UTF-16 code unit, as JVM based engines report
    UTF8 = "utf8"      # UTF-8 byte


@dataclass
class RawAnnotation:
    """
    One engine-native annotation, before normalization.

    ``label`` is the engine's own name: an entity type for NER, a tag for POS.
    Offsets are in the backend's OffsetUnit.
    """
    stage: NlpStage
    start: int
    end: int
    label: Optional[str] = None
    text: Optional[str] = None


@dataclass
class BackendOutput:
    """Everything a backend returns for one document"""
    annotations: List[RawAnnotation] = field(default_factory=list)
    offset_unit: OffsetUnit = OffsetUnit.CHAR
    metadata: Dict[str, Any] = field(default_factory=dict)

    def add(self, stage: NlpStage, start: int, end: int, label: Optional[str] = None,
            text: Optional[str] = None) -> "BackendOutput":
        self.annotations.append(RawAnnotation(stage, start, end, label=label, text=text))
        return self


class NlpBackend(ABC):
    """
    Abstract base class for NLP backends

    Capabilities are declared at class level and read once when the backend is
    registered:

        SUPPORTED_STAGES   language -> stages the engine can produce
        STAGE_DEPENDENCIES extra prerequisites on top of the defaults
        CATEGORY_LABELS    engine entity label -> EntityCategory
        CONCURRENCY_SAFE   process() may run concurrently for one language
        OFFSET_UNIT        unit of the offsets in BackendOutput

    Instances are created and owned by the lifecycle manager. initialize() and
    terminate() are idempotent; subclasses implement _load() and _unload().
    """

    SUPPORTED_STAGES: Mapping[Language, Set[NlpStage]] = {}
    STAGE_DEPENDENCIES: Mapping[NlpStage, Set[NlpStage]] = {}
    CATEGORY_LABELS: Mapping[str, EntityCategory] = {}
    CONCURRENCY_SAFE: bool = False
    OFFSET_UNIT: OffsetUnit = OffsetUnit.CHAR

    def __init__(self, config: Dict[str, Any] = None):
        self.config = config or {}
        self._ready_languages: Set[Language] = set()
        # Languages whose _load() started, including failed or partial loads
        self._touched_languages: Set[Language] = set()

    @abstractmethod
    def get_name(self) -> str:
        """Get backend name"""
        pass

    @classmethod
    def support_matrix(cls) -> LanguageSupportMatrix:
        return LanguageSupportMatrix(cls.SUPPORTED_STAGES)

    @classmethod
    def stage_dependencies(cls) -> Mapping[NlpStage, Set[NlpStage]]:
        return cls.STAGE_DEPENDENCIES

    @classmethod
    def category_labels(cls) -> Mapping[str, EntityCategory]:
        return cls.CATEGORY_LABELS

    @property
    def ready_languages(self) -> FrozenSet[Language]:
        return frozenset(self._ready_languages)

    def is_ready(self, language: Language) -> bool:
        return language in self._ready_languages

    async def initialize(self, language: Language) -> None:
        """Load resources for a language; no-op when already loaded"""
        if language in self._ready_languages:
            return
        self._touched_languages.add(language)
        await self._load(language)
        self._ready_languages.add(language)

    async def terminate(self, language: Language) -> None:
        """Release resources for a language; no-op when nothing was loaded"""
        if language not in self._touched_languages:
            return
        self._touched_languages.discard(language)
        self._ready_languages.discard(language)
        await self._unload(language)

    async def process(self, text: str, language: Language, stages: Sequence[NlpStage],
                      categories: FrozenSet[EntityCategory]) -> BackendOutput:
        """
        Annotate text for the resolved stages.

        Raises:
            BackendNotReadyError: language was not initialized
        """
        if language not in self._ready_languages:
            raise BackendNotReadyError(
                f"{self.get_name()} not initialized for language {language.value}"
            )
        return await self._process(text, language, stages, categories)

    @abstractmethod
    async def _load(self, language: Language) -> None:
        pass

    @abstractmethod
    async def _process(self, text: str, language: Language, stages: Sequence[NlpStage],
                       categories: FrozenSet[EntityCategory]) -> BackendOutput:
        pass

    async def _unload(self, language: Language) -> None:
        pass

    def pos_tagset(self, language: Language) -> Optional[str]:
        """Name of the POS tag set used for a language, if any"""
        return None

