"""
Languages and per-backend language support matrices
"""
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional

from nlp_pipeline.stages import NlpStage


class Language(Enum):
    """Document languages, valued by ISO 639-1 code"""
    ENGLISH = "en"
    SPANISH = "es"
    FRENCH = "fr"
    GERMAN = "de"
    ITALIAN = "it"
    PORTUGUESE = "pt"
    DUTCH = "nl"
    RUSSIAN = "ru"
    CHINESE = "zh"
    JAPANESE = "ja"
    ARABIC = "ar"
    GALICIAN = "gl"
    CATALAN = "ca"
    GREEK = "el"
    UNKNOWN = "unknown"

    @property
    def iso6391_code(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value) -> "Language":
        """
        Accept a Language, an ISO 639-1 code or an English language name.

        Raises:
            ValueError: value names no known language
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip()
            for language in cls:
                if key.lower() == language.value or key.upper() == language.name:
                    return language
        raise ValueError(f"Unknown language: {value!r}")

    @classmethod
    def try_parse(cls, value) -> Optional["Language"]:
        try:
            return cls.parse(value)
        except ValueError:
            return None


class LanguageSupportMatrix:
    """
    Which stages a backend can produce for which language.

    Built once when a backend is registered and read-only afterwards, so
    concurrent readers need no locking. Unknown languages are simply
    unsupported.
    """

    def __init__(self, entries: Optional[Mapping[Language, Iterable[NlpStage]]] = None):
        built: Dict[Language, FrozenSet[NlpStage]] = {}
        for language, stages in (entries or {}).items():
            language = Language.parse(language)
            built[language] = frozenset(NlpStage.parse(stage) for stage in stages) | built.get(language, frozenset())
        self._entries: Mapping[Language, FrozenSet[NlpStage]] = MappingProxyType(built)

    def supports(self, language, stage) -> bool:
        """True when the stage can be produced for the language"""
        language = Language.try_parse(language)
        if language is None:
            return False
        try:
            stage = NlpStage.parse(stage)
        except ValueError:
            return False
        return stage in self._entries.get(language, frozenset())

    def supports_all(self, language, stages: Iterable[NlpStage]) -> bool:
        return all(self.supports(language, stage) for stage in stages)

    def supported_stages(self, language) -> FrozenSet[NlpStage]:
        """Stages available for a language, empty when unsupported"""
        language = Language.try_parse(language)
        if language is None:
            return frozenset()
        return self._entries.get(language, frozenset())

    def languages(self, stage: Optional[NlpStage] = None) -> FrozenSet[Language]:
        """Languages with at least one stage, or with the given stage"""
        if stage is None:
            return frozenset(lang for lang, stages in self._entries.items() if stages)
        stage = NlpStage.parse(stage)
        return frozenset(lang for lang, stages in self._entries.items() if stage in stages)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            language.value: sorted((s.value for s in stages), key=lambda v: NlpStage(v).order)
            for language, stages in self._entries.items()
        }

    def __contains__(self, language) -> bool:
        language = Language.try_parse(language)
        return language is not None and bool(self._entries.get(language))

    def __iter__(self) -> Iterator[Language]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other):
        if not isinstance(other, LanguageSupportMatrix):
            return NotImplemented
        return dict(self._entries) == dict(other._entries)

    def __repr__(self):
        return f"LanguageSupportMatrix({self.to_dict()})"
