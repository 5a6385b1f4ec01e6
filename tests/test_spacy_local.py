"""
Tests for the spaCy backend, run against a blank pipeline with an entity ruler
so no trained model package is needed
"""
import pytest

spacy = pytest.importorskip("spacy")

from nlp_pipeline.annotation import EntityCategory
from nlp_pipeline.exceptions import BackendInitError
from nlp_pipeline.language import Language
from nlp_pipeline.orchestrator import PipelineOrchestrator
from nlp_pipeline.registry import BackendRegistry
from nlp_pipeline.stages import NlpStage
from nlp_providers import spacy_local
from nlp_providers.spacy_local import SpacyBackend

TEXT = "John works at Acme.  Mary lives in Paris."


def blank_pipeline(name):
    nlp = spacy.blank("en")
    ruler = nlp.add_pipe("entity_ruler")
    ruler.add_patterns([
        {"label": "PERSON", "pattern": "John"},
        {"label": "PER", "pattern": "Mary"},
        {"label": "ORG", "pattern": "Acme"},
        {"label": "GPE", "pattern": "Paris"},
        {"label": "DATE", "pattern": "Monday"},
    ])
    return nlp


@pytest.fixture
def loaded_models(monkeypatch):
    loaded = []

    def fake_load(name):
        loaded.append(name)
        return blank_pipeline(name)

    monkeypatch.setattr(spacy_local.spacy, "load", fake_load)
    return loaded


@pytest.mark.asyncio
async def test_backend_output(loaded_models):
    backend = SpacyBackend({"models": {"en": "en_test_model"}})
    await backend.initialize(Language.ENGLISH)
    assert loaded_models == ["en_test_model"]

    output = await backend.process(
        TEXT, Language.ENGLISH, (NlpStage.SENTENCE, NlpStage.TOKEN, NlpStage.NER), frozenset(EntityCategory)
    )

    entities = [(a.label, a.text) for a in output.annotations if a.stage == NlpStage.NER]
    assert entities == [("PERSON", "John"), ("ORG", "Acme"), ("PER", "Mary"), ("GPE", "Paris")]
    tokens = [a.text for a in output.annotations if a.stage == NlpStage.TOKEN]
    assert all(token.strip() for token in tokens)
    assert tokens[:5] == ["John", "works", "at", "Acme", "."]
    sentences = [a for a in output.annotations if a.stage == NlpStage.SENTENCE]
    assert len(sentences) == 2
    for annotation in output.annotations:
        assert TEXT[annotation.start:annotation.end] == annotation.text

    await backend.terminate(Language.ENGLISH)
    assert backend._executor is None
    assert not backend.is_ready(Language.ENGLISH)


@pytest.mark.asyncio
async def test_through_orchestrator(loaded_models):
    registry = BackendRegistry()
    registry.register("spacy", SpacyBackend)

    async with PipelineOrchestrator(registry=registry, timeout=None) as pipeline:
        annotation = await pipeline.submit(TEXT, "en", NlpStage.NER, {EntityCategory.PERSON, EntityCategory.LOCATION})

        assert annotation.backend == "spacy"
        assert annotation.stages == (NlpStage.TOKEN, NlpStage.NER)
        assert [(s.text, s.category) for s in annotation.entities()] == [
            ("John", EntityCategory.PERSON),
            ("Mary", EntityCategory.PERSON),
            ("Paris", EntityCategory.LOCATION),
        ]

        await pipeline.submit("Acme.", "en", NlpStage.TOKEN)
        assert len(loaded_models) == 1


@pytest.mark.asyncio
async def test_missing_model(monkeypatch):
    def missing(name):
        raise OSError(f"[E050] Can't find model '{name}'")

    monkeypatch.setattr(spacy_local.spacy, "load", missing)
    registry = BackendRegistry()
    registry.register("spacy", SpacyBackend, config={"auto_download": False})

    async with PipelineOrchestrator(registry=registry, timeout=None) as pipeline:
        with pytest.raises(BackendInitError) as exc_info:
            await pipeline.submit("Jean habite à Paris.", Language.FRENCH, NlpStage.NER)
        assert isinstance(exc_info.value.original_error, OSError)


def test_capabilities():
    registration = BackendRegistry().register("spacy", SpacyBackend)
    assert registration.support_matrix.supports(Language.DUTCH, NlpStage.POS)
    assert not registration.support_matrix.supports(Language.JAPANESE, NlpStage.TOKEN)
    assert registration.stage_graph.resolve(NlpStage.NER) == (NlpStage.TOKEN, NlpStage.NER)
    assert registration.category_labels["GPE"] == EntityCategory.LOCATION
    assert registration.concurrency_safe is False


def test_builtin_registration():
    registry = BackendRegistry(register_builtins=True)
    assert registry.get("spacy").backend_class is SpacyBackend
