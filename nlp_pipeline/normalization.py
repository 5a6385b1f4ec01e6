"""
Translation of engine-native backend output into the canonical Annotation
"""
from bisect import bisect_left
from typing import FrozenSet, List, Optional, Sequence

from nlp_pipeline.annotation import Annotation, AnnotationBuilder, EntityCategory
from nlp_pipeline.base import BackendOutput, OffsetUnit
from nlp_pipeline.exceptions import BackendProcessError
from nlp_pipeline.language import Language
from nlp_pipeline.registry import BackendRegistration
from nlp_pipeline.stages import NlpStage
from logger import get_logger

logger = get_logger(__name__)


class OffsetConverter:
    """
    Maps offsets counted in UTF-16 code units or UTF-8 bytes back to indices
    of the original Python string.
    """

    def __init__(self, text: str, unit: OffsetUnit):
        self.text = text
        self.unit = unit
        self._boundaries: Optional[List[int]] = None
        if unit != OffsetUnit.CHAR:
            # boundaries[i] = unit offset at which character i starts
            boundaries = [0]
            for char in text:
                boundaries.append(boundaries[-1] + self._width(char))
            self._boundaries = boundaries

    def _width(self, char: str) -> int:
        if self.unit == OffsetUnit.UTF16:
            return 2 if ord(char) > 0xFFFF else 1
        return len(char.encode("utf-8", errors="surrogatepass"))

    def to_char(self, offset: int) -> int:
        """
        Raises:
            ValueError: offset falls inside a character or past the text end
        """
        if self._boundaries is None:
            return offset
        index = bisect_left(self._boundaries, offset)
        if index >= len(self._boundaries) or self._boundaries[index] != offset:
            raise ValueError(f"{self.unit.value} offset {offset} is not on a character boundary")
        return index


class AnnotationNormalizer:
    """
    Builds an Annotation from one BackendOutput.

    Only resolved stages are kept. Entity labels go through the backend's
    fixed category table: unmapped labels and categories nobody asked for are
    dropped. Reported matched text must equal the source substring.
    """

    def __init__(self, registration: BackendRegistration):
        self.registration = registration

    def normalize(self, text: str, language: Language, fingerprint: str, output: BackendOutput,
                  stages: Sequence[NlpStage], categories: FrozenSet[EntityCategory],
                  pos_tagset: Optional[str] = None) -> Annotation:
        backend = self.registration.name
        builder = AnnotationBuilder(
            fingerprint=fingerprint,
            language=language,
            backend=backend,
            text_length=len(text),
            stages=stages,
            pos_tagset=pos_tagset if NlpStage.POS in stages else None,
        )
        converter = OffsetConverter(text, output.offset_unit)
        wanted = set(stages)
        dropped_labels = set()
        skipped = 0

        for raw in output.annotations:
            if raw.stage not in wanted:
                skipped += 1
                continue

            category = None
            tag = None
            if raw.stage == NlpStage.NER:
                category = self.registration.category_labels.get(raw.label) if raw.label else None
                if category is None:
                    dropped_labels.add(raw.label)
                    continue
                if category not in categories:
                    continue
            elif raw.stage == NlpStage.POS:
                tag = raw.label

            try:
                start = converter.to_char(raw.start)
                end = converter.to_char(raw.end)
            except ValueError as e:
                raise BackendProcessError(str(e), backend=backend, language=language, original_error=e)

            if raw.text is not None and 0 <= start <= end <= len(text) and text[start:end] != raw.text:
                raise BackendProcessError(
                    f"{raw.stage.name} span [{start}, {end}) covers {text[start:end]!r}, "
                    f"backend reported {raw.text!r}",
                    backend=backend,
                    language=language
                )

            builder.add(raw.stage, start, end, category=category, text=raw.text, tag=tag)

        if dropped_labels:
            logger.debug(f"{backend}: dropped unmapped entity labels {sorted(map(str, dropped_labels))}")
        if skipped:
            logger.debug(f"{backend}: ignored {skipped} annotations outside stages {[s.name for s in stages]}")

        return builder.build()
