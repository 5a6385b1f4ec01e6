"""
Shared fixtures
"""
import pytest

from nlp_pipeline.orchestrator import PipelineOrchestrator
from nlp_pipeline.registry import BackendRegistry
from fakes import CallLog, FakeBackend


@pytest.fixture
def call_log():
    return CallLog()


@pytest.fixture
def registry(call_log):
    """Fresh registry holding the fake backend under the name 'fake'"""
    registry = BackendRegistry()
    registry.register("fake", FakeBackend, config={"log": call_log}, caching=True)
    return registry


@pytest.fixture
def orchestrator(registry):
    return PipelineOrchestrator(registry=registry, default_backend="fake", timeout=None)
