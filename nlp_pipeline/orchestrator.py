"""
Pipeline orchestrator - the entry point callers submit documents to
"""
import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union

from nlp_pipeline.annotation import Annotation, EntityCategory
from nlp_pipeline.exceptions import InvalidRequestError, UnsupportedLanguageOrStageError
from nlp_pipeline.language import Language
from nlp_pipeline.lifecycle import PipelineLifecycleManager
from nlp_pipeline.normalization import AnnotationNormalizer
from nlp_pipeline.registry import BackendRegistration, BackendRegistry, get_registry
from nlp_pipeline.stages import NlpStage
from config import settings
from logger import get_logger
from metrics import track_pipeline

logger = get_logger(__name__)

_DEFAULT = object()


def fingerprint_text(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded text"""
    return hashlib.sha256(text.encode("utf-8", errors="surrogatepass")).hexdigest()


@dataclass(frozen=True)
class PipelineRequest:
    """One document to annotate; created per call and never stored"""
    text: str
    language: Union[Language, str]
    target_stage: Union[NlpStage, str]
    target_categories: FrozenSet[Union[EntityCategory, str]] = field(default_factory=frozenset)
    backend: Optional[str] = None
    timeout: Optional[float] = None
    fingerprint: Optional[str] = None

    def document_fingerprint(self) -> str:
        return self.fingerprint or fingerprint_text(self.text)


class PipelineOrchestrator:
    """
    Validates requests against backend capabilities, resolves prerequisite
    stages, hands the document to the lifecycle manager and normalizes the
    backend output.

    A request either returns a complete Annotation or raises exactly one
    PipelineError; nothing partial is ever returned.

    Usage:
        async with PipelineOrchestrator() as pipeline:
            annotation = await pipeline.submit(text, "en", NlpStage.NER, {EntityCategory.PERSON})
    """

    def __init__(self,
                 registry: Optional[BackendRegistry] = None,
                 lifecycle: Optional[PipelineLifecycleManager] = None,
                 default_backend: Optional[str] = None,
                 timeout: Any = _DEFAULT):
        self.registry = registry if registry is not None else get_registry()
        self.lifecycle = lifecycle if lifecycle is not None else PipelineLifecycleManager(self.registry)
        self.default_backend = default_backend or settings.get('nlp_default_backend', 'spacy')
        self.timeout = settings.get('nlp_request_timeout') if timeout is _DEFAULT else timeout
        self.max_text_length = settings.get('max_text_length', 1000000)

        logger.info(f"Pipeline orchestrator configured with backends {self.registry.list_backends()}, "
                    f"default: {self.default_backend}")

    async def __aenter__(self) -> "PipelineOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown_all()

    async def submit(self, text: str, language, target_stage,
                     target_categories: Optional[Iterable] = None,
                     backend: Optional[str] = None,
                     timeout: Any = _DEFAULT,
                     fingerprint: Optional[str] = None) -> Annotation:
        """Annotate one document; see run()"""
        return await self.run(PipelineRequest(
            text=text,
            language=language,
            target_stage=target_stage,
            target_categories=frozenset(target_categories or ()),
            backend=backend,
            timeout=self.timeout if timeout is _DEFAULT else timeout,
            fingerprint=fingerprint,
        ))

    @track_pipeline
    async def run(self, request: PipelineRequest) -> Annotation:
        """
        Annotate one document

        Raises:
            InvalidRequestError: malformed request
            UnsupportedLanguageOrStageError: no backend serves the language and
                stage; raised before any backend is touched
            BackendInitError, BackendProcessError, PipelineTimeoutError,
            PipelineShutdownError
        """
        text = self._validate_text(request.text)
        language = self._parse_language(request.language)
        target_stage = self._parse_stage(request.target_stage, language)
        categories = self._parse_categories(request.target_categories, request.backend) or frozenset(EntityCategory)

        registration = self.select_backend(language, target_stage, request.backend)
        stages = registration.stage_graph.resolve(target_stage)
        unsupported = [s for s in stages if not registration.support_matrix.supports(language, s)]
        if unsupported:
            raise UnsupportedLanguageOrStageError(
                f"Stages {[s.name for s in unsupported]} required by {target_stage.name} "
                f"are not supported for {language.value}",
                backend=registration.name,
                language=language,
                stage=target_stage
            )

        deadline = None
        if request.timeout is not None:
            deadline = asyncio.get_running_loop().time() + request.timeout

        logger.debug(f"Running {registration.name} on {language.value} document, stages {[s.name for s in stages]}")
        result = await self.lifecycle.process(
            registration.name, language, text, stages, categories, deadline=deadline
        )

        annotation = AnnotationNormalizer(registration).normalize(
            text,
            language,
            request.document_fingerprint(),
            result.output,
            stages,
            categories,
            pos_tagset=result.pos_tagset,
        )
        logger.info(f"Annotated document {annotation.fingerprint[:12]} with {registration.name} "
                    f"({len(annotation)} spans, {result.duration:.3f}s)")
        return annotation

    def select_backend(self, language: Language, stage: NlpStage,
                       backend: Optional[str] = None) -> BackendRegistration:
        """
        Pick the backend for a request: the named one, else the default when it
        supports the request, else the first registered backend that does.
        """
        if backend is not None:
            registration = self.registry.get(backend)
            if not registration.support_matrix.supports(language, stage):
                raise UnsupportedLanguageOrStageError(
                    f"Backend '{backend}' does not support {stage.name} for {language.value}",
                    backend=backend,
                    language=language,
                    stage=stage
                )
            return registration

        candidates = self.registry.registrations()
        if self.default_backend in self.registry:
            default = self.registry.get(self.default_backend)
            candidates = [default] + [r for r in candidates if r is not default]

        for registration in candidates:
            if registration.support_matrix.supports(language, stage):
                return registration

        raise UnsupportedLanguageOrStageError(
            f"No registered backend supports {stage.name} for {language.value}",
            language=language,
            stage=stage
        )

    def supported_languages(self, stage=None) -> Dict[str, List[str]]:
        """Backend name -> languages it serves (optionally for one stage)"""
        stage = NlpStage.parse(stage) if stage is not None else None
        return {
            registration.name: sorted(l.value for l in registration.support_matrix.languages(stage))
            for registration in self.registry.registrations()
        }

    def status(self) -> Dict[str, Any]:
        return {
            "default_backend": self.default_backend,
            "backends": [r.to_dict() for r in self.registry.registrations()],
            "lifecycle": self.lifecycle.stats(),
        }

    async def shutdown_all(self) -> None:
        """Terminate every cached backend instance; the only release path"""
        await self.lifecycle.shutdown_all()
        logger.info("Pipeline orchestrator shut down")

    def _validate_text(self, text) -> str:
        if not isinstance(text, str):
            raise InvalidRequestError(f"Document text must be a string, got {type(text).__name__}")
        if len(text) > self.max_text_length:
            raise InvalidRequestError(
                f"Text exceeds maximum length of {self.max_text_length} characters"
            )
        return text

    @staticmethod
    def _parse_language(value) -> Language:
        language = Language.try_parse(value)
        if language is None or language == Language.UNKNOWN:
            raise UnsupportedLanguageOrStageError(f"Unsupported language: {value!r}", language=value)
        return language

    @staticmethod
    def _parse_categories(values, backend: Optional[str] = None) -> FrozenSet[EntityCategory]:
        try:
            return frozenset(EntityCategory.parse(value) for value in (values or ()))
        except ValueError as e:
            raise InvalidRequestError(str(e), backend=backend, original_error=e)

    @staticmethod
    def _parse_stage(value, language: Language) -> NlpStage:
        try:
            return NlpStage.parse(value)
        except ValueError as e:
            raise UnsupportedLanguageOrStageError(str(e), language=language, stage=value)
