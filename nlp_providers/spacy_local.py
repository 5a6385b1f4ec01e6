"""
Local spaCy NLP backend
"""
import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, FrozenSet, Optional, Sequence

import spacy

from nlp_pipeline.annotation import EntityCategory
from nlp_pipeline.base import BackendOutput, NlpBackend, OffsetUnit
from nlp_pipeline.language import Language
from nlp_pipeline.stages import NlpStage
from config import settings
from logger import get_logger

logger = get_logger(__name__)

_ALL_STAGES = {NlpStage.SENTENCE, NlpStage.TOKEN, NlpStage.POS, NlpStage.NER}


class SpacyBackend(NlpBackend):
    """
    spaCy backend, one pipeline per initialized language.

    Loading and processing run in a small per-instance thread pool so the
    event loop is never blocked. A spaCy Language object is not safe to call
    from several threads at once, so the backend is declared not
    concurrency-safe and the lifecycle manager serializes process() calls.
    """

    SUPPORTED_STAGES = {
        Language.ENGLISH: _ALL_STAGES,
        Language.FRENCH: _ALL_STAGES,
        Language.SPANISH: _ALL_STAGES,
        Language.GERMAN: _ALL_STAGES,
        Language.ITALIAN: _ALL_STAGES,
        Language.PORTUGUESE: _ALL_STAGES,
        Language.DUTCH: _ALL_STAGES,
    }
    # spaCy's entity recognizer runs on its own tokenization
    STAGE_DEPENDENCIES = {NlpStage.NER: {NlpStage.TOKEN}}
    CATEGORY_LABELS = {
        "PERSON": EntityCategory.PERSON,
        "PER": EntityCategory.PERSON,
        "ORG": EntityCategory.ORGANIZATION,
        "GPE": EntityCategory.LOCATION,
        "LOC": EntityCategory.LOCATION,
    }
    CONCURRENCY_SAFE = False
    OFFSET_UNIT = OffsetUnit.CHAR

    def __init__(self, config: Dict[str, Any] = None):
        super().__init__(config)
        self.models: Dict[str, str] = dict(settings.get('spacy_models', {}))
        self.models.update(self.config.get('models', {}))
        self.enable_gpu = self.config.get('enable_gpu', settings.get('enable_gpu', False))
        self.auto_download = self.config.get('auto_download', settings.get('spacy_auto_download', False))
        self._pipelines: Dict[Language, Any] = {}
        self._executor: Optional[ThreadPoolExecutor] = None

    def get_name(self) -> str:
        return "spaCy"

    def model_name(self, language: Language) -> str:
        try:
            return self.models[language.value]
        except KeyError:
            raise ValueError(f"No spaCy model configured for language {language.value}")

    async def _load(self, language: Language) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="spacy")

        loop = asyncio.get_running_loop()
        self._pipelines[language] = await loop.run_in_executor(
            self._executor, self._load_model, language
        )

    def _load_model(self, language: Language):
        """Synchronous model loading"""
        model_name = self.model_name(language)

        if self.enable_gpu:
            try:
                spacy.require_gpu()
                logger.info("GPU enabled for spaCy")
            except Exception as e:
                logger.info(f"GPU not available, using CPU: {e}")

        try:
            nlp = spacy.load(model_name)
        except OSError:
            if not self.auto_download:
                raise
            logger.warning(f"spaCy model {model_name} not found, attempting download")
            from spacy.cli import download
            download(model_name)
            nlp = spacy.load(model_name)

        # Sentence boundaries come from the parser or senter when present
        if not {"parser", "senter", "sentencizer"} & set(nlp.pipe_names):
            nlp.add_pipe("sentencizer", first=True)

        nlp.max_length = max(nlp.max_length, settings.get('max_text_length', 1000000))
        logger.info(f"Loaded spaCy model: {model_name}")
        return nlp

    async def _process(self, text: str, language: Language, stages: Sequence[NlpStage],
                       categories: FrozenSet[EntityCategory]) -> BackendOutput:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, self._process_sync, self._pipelines[language], text, tuple(stages)
        )

    def _process_sync(self, nlp, text: str, stages: Sequence[NlpStage]) -> BackendOutput:
        """Synchronous text processing"""
        doc = nlp(text)
        output = BackendOutput(offset_unit=self.OFFSET_UNIT, metadata={"model": nlp.meta.get("name")})

        if NlpStage.SENTENCE in stages:
            for sent in doc.sents:
                if sent.text.strip():
                    output.add(NlpStage.SENTENCE, sent.start_char, sent.end_char, text=sent.text)

        for token in doc:
            if token.is_space:
                continue
            end = token.idx + len(token.text)
            if NlpStage.TOKEN in stages:
                output.add(NlpStage.TOKEN, token.idx, end, text=token.text)
            if NlpStage.POS in stages and token.pos_:
                output.add(NlpStage.POS, token.idx, end, label=token.pos_, text=token.text)

        if NlpStage.NER in stages:
            for ent in doc.ents:
                output.add(NlpStage.NER, ent.start_char, ent.end_char, label=ent.label_, text=ent.text)

        return output

    def pos_tagset(self, language: Language) -> Optional[str]:
        return "universal"

    async def _unload(self, language: Language) -> None:
        self._pipelines.pop(language, None)
        if not self._pipelines and self._executor is not None:
            executor = self._executor
            self._executor = None
            await asyncio.get_running_loop().run_in_executor(None, executor.shutdown)
            logger.debug("Executor shutdown completed")
