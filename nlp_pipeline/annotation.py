"""
Canonical annotation model

Backend output of any shape ends up as Span values grouped by stage inside one
Annotation per (document, language). Offsets are character offsets into the
original input text (Python string indices).
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from nlp_pipeline.exceptions import BackendProcessError
from nlp_pipeline.language import Language
from nlp_pipeline.stages import NlpStage


class EntityCategory(Enum):
    """Backend-agnostic named entity categories"""
    PERSON = "PERSON"
    ORGANIZATION = "ORGANIZATION"
    LOCATION = "LOCATION"

    @classmethod
    def parse(cls, value) -> "EntityCategory":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().upper()
            for category in cls:
                if key == category.value:
                    return category
        raise ValueError(f"Unknown entity category: {value!r}")


@dataclass(frozen=True)
class Span:
    """
    One annotated character range.

    Invariant: 0 <= start <= end <= len(source text). ``category`` is only set
    on NER spans, ``tag`` (the engine's tag string) only on POS spans.
    """
    stage: NlpStage
    start: int
    end: int
    category: Optional[EntityCategory] = None
    text: Optional[str] = None
    tag: Optional[str] = None

    def __post_init__(self):
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid span offsets [{self.start}, {self.end})")
        if self.category is not None and self.stage != NlpStage.NER:
            raise ValueError(f"Only NER spans carry a category, got {self.stage.name}")

    @property
    def length(self) -> int:
        return self.end - self.start

    def overlaps(self, other: "Span") -> bool:
        return self.start < other.end and other.start < self.end

    def sort_key(self) -> Tuple[int, int]:
        return (self.start, self.end)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "stage": self.stage.value,
            "start": self.start,
            "end": self.end,
        }
        if self.category is not None:
            data["category"] = self.category.value
        if self.text is not None:
            data["text"] = self.text
        if self.tag is not None:
            data["tag"] = self.tag
        return data


@dataclass(frozen=True)
class Annotation:
    """
    All spans produced for one (document, language) pair.

    Built by AnnotationBuilder, which guarantees document order per stage, no
    overlapping TOKEN or SENTENCE spans and no overlapping NER spans within a
    category.
    """
    fingerprint: str
    language: Language
    backend: str
    text_length: int
    stages: Tuple[NlpStage, ...]
    spans: Dict[NlpStage, Tuple[Span, ...]]
    pos_tagset: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def get(self, stage) -> Tuple[Span, ...]:
        """Spans of one stage in document order"""
        return self.spans.get(NlpStage.parse(stage), ())

    @property
    def sentences(self) -> Tuple[Span, ...]:
        return self.get(NlpStage.SENTENCE)

    @property
    def tokens(self) -> Tuple[Span, ...]:
        return self.get(NlpStage.TOKEN)

    @property
    def pos_tags(self) -> Tuple[Span, ...]:
        return self.get(NlpStage.POS)

    def entities(self, category=None) -> Tuple[Span, ...]:
        """NER spans, optionally restricted to one category"""
        spans = self.get(NlpStage.NER)
        if category is None:
            return spans
        category = EntityCategory.parse(category)
        return tuple(span for span in spans if span.category == category)

    def get_by_span(self, start: int, end: int, stage=None) -> List[Span]:
        """Spans overlapping a character range"""
        stages = [NlpStage.parse(stage)] if stage is not None else list(self.spans)
        return [
            span
            for s in stages
            for span in self.spans.get(s, ())
            if span.start < end and span.end > start
        ]

    def __len__(self) -> int:
        return sum(len(spans) for spans in self.spans.values())

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary for JSON export"""
        return {
            "fingerprint": self.fingerprint,
            "language": self.language.value,
            "backend": self.backend,
            "text_length": self.text_length,
            "stages": [stage.value for stage in self.stages],
            "pos_tagset": self.pos_tagset,
            "created_at": self.created_at.isoformat(),
            "spans": {
                stage.value: [span.to_dict() for span in spans]
                for stage, spans in self.spans.items()
            },
        }


class AnnotationBuilder:
    """
    Collects spans for one document and freezes them into an Annotation.

    Offsets are checked against the source text length as spans are added;
    ordering and overlap rules are applied in build().
    """

    def __init__(self, fingerprint: str, language: Language, backend: str, text_length: int,
                 stages: Iterable[NlpStage], pos_tagset: Optional[str] = None):
        self.fingerprint = fingerprint
        self.language = language
        self.backend = backend
        self.text_length = text_length
        self.stages = tuple(stages)
        self.pos_tagset = pos_tagset
        self._spans: Dict[NlpStage, List[Span]] = {stage: [] for stage in self.stages}

    def add(self, stage: NlpStage, start: int, end: int, category: Optional[EntityCategory] = None,
            text: Optional[str] = None, tag: Optional[str] = None) -> "AnnotationBuilder":
        if stage not in self._spans:
            raise ValueError(f"Stage {stage.name} is not part of this annotation")
        if not 0 <= start <= end <= self.text_length:
            raise BackendProcessError(
                f"{stage.name} span [{start}, {end}) outside text of length {self.text_length}",
                backend=self.backend,
                language=self.language
            )
        self._spans[stage].append(Span(stage, start, end, category=category, text=text, tag=tag))
        return self

    def build(self) -> Annotation:
        spans = {}
        for stage, stage_spans in self._spans.items():
            ordered = self._dedupe(sorted(stage_spans, key=Span.sort_key))
            if stage == NlpStage.NER:
                ordered = self._resolve_entity_overlaps(ordered)
            else:
                self._check_no_overlap(stage, ordered)
            spans[stage] = tuple(ordered)

        return Annotation(
            fingerprint=self.fingerprint,
            language=self.language,
            backend=self.backend,
            text_length=self.text_length,
            stages=self.stages,
            spans=spans,
            pos_tagset=self.pos_tagset,
        )

    @staticmethod
    def _dedupe(spans: List[Span]) -> List[Span]:
        seen = set()
        unique = []
        for span in spans:
            key = (span.start, span.end, span.category)
            if key in seen:
                continue
            seen.add(key)
            unique.append(span)
        return unique

    def _check_no_overlap(self, stage: NlpStage, spans: List[Span]):
        for previous, current in zip(spans, spans[1:]):
            if previous.overlaps(current):
                raise BackendProcessError(
                    f"Overlapping {stage.name} spans [{previous.start}, {previous.end}) "
                    f"and [{current.start}, {current.end})",
                    backend=self.backend,
                    language=self.language
                )

    @staticmethod
    def _resolve_entity_overlaps(spans: List[Span]) -> List[Span]:
        # Within a category keep the earliest, then longest, mention
        kept: List[Span] = []
        last_by_category: Dict[Optional[EntityCategory], Span] = {}
        for span in sorted(spans, key=lambda s: (s.start, -s.end)):
            last = last_by_category.get(span.category)
            if last is not None and last.overlaps(span):
                continue
            last_by_category[span.category] = span
            kept.append(span)
        return sorted(kept, key=Span.sort_key)
