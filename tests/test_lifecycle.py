"""
Tests for backend lifecycle management: shared initialization, exclusive
processing, failure handling and explicit release
"""
import asyncio

import pytest

from nlp_pipeline.annotation import EntityCategory
from nlp_pipeline.exceptions import (
    BackendInitError,
    BackendNotReadyError,
    BackendProcessError,
    PipelineShutdownError,
    PipelineTimeoutError,
)
from nlp_pipeline.language import Language
from nlp_pipeline.lifecycle import BackendStateMachine, BackendStatus, PipelineLifecycleManager
from nlp_pipeline.stages import NlpStage
from fakes import ConcurrentFakeBackend, CorruptingBackend, FakeBackend, NotAnOutputBackend

TEXT = "John works at Acme."
STAGES = (NlpStage.SENTENCE, NlpStage.TOKEN, NlpStage.NER)
CATEGORIES = frozenset(EntityCategory)


@pytest.fixture
def manager(registry):
    return PipelineLifecycleManager(registry)


async def run(manager, language="en", backend="fake", deadline=None):
    return await manager.process(backend, language, TEXT, STAGES, CATEGORIES, deadline=deadline)


def test_state_machine_transitions():
    assert BackendStateMachine.is_valid_transition(BackendStatus.UNLOADED, BackendStatus.INITIALIZING)
    assert BackendStateMachine.is_valid_transition(BackendStatus.INITIALIZING, BackendStatus.UNLOADED)
    assert BackendStateMachine.is_valid_transition(BackendStatus.PROCESSING, BackendStatus.READY)
    assert BackendStateMachine.is_valid_transition(BackendStatus.TERMINATED, BackendStatus.INITIALIZING)
    assert not BackendStateMachine.is_valid_transition(BackendStatus.UNLOADED, BackendStatus.READY)
    assert not BackendStateMachine.is_valid_transition(BackendStatus.UNLOADED, BackendStatus.PROCESSING)
    assert not BackendStateMachine.is_valid_transition(BackendStatus.TERMINATED, BackendStatus.PROCESSING)


@pytest.mark.asyncio
async def test_process_initializes_lazily(manager, call_log):
    assert manager.status("fake", "en") == BackendStatus.UNLOADED
    assert call_log.loads == 0

    result = await run(manager)

    assert manager.status("fake", Language.ENGLISH) == BackendStatus.READY
    assert call_log.loads == 1
    assert result.pos_tagset == "fake-tags"
    assert result.duration >= 0
    assert {a.label for a in result.output.annotations if a.stage == NlpStage.NER} == {"Person", "Company"}


@pytest.mark.asyncio
async def test_concurrent_first_requests_share_initialization(manager, call_log):
    call_log.load_delay = 0.05

    results = await asyncio.gather(*(run(manager) for _ in range(8)))

    assert len(results) == 8
    assert call_log.loads == 1
    assert call_log.instances == 1
    assert call_log.processed == 8


@pytest.mark.asyncio
async def test_languages_initialize_independently(manager, call_log):
    await asyncio.gather(run(manager, "en"), run(manager, "fr"), run(manager, "en"))
    assert call_log.count("load", "en") == 1
    assert call_log.count("load", "fr") == 1


@pytest.mark.asyncio
async def test_non_concurrency_safe_backend_is_serialized(manager, call_log):
    call_log.process_delay = 0.01

    await asyncio.gather(*(run(manager) for _ in range(5)))

    assert call_log.max_active == 1
    assert call_log.processed == 5


@pytest.mark.asyncio
async def test_concurrency_safe_backend_runs_in_parallel(registry, call_log):
    registry.register("parallel", ConcurrentFakeBackend, config={"log": call_log})
    manager = PipelineLifecycleManager(registry)
    call_log.process_delay = 0.05

    await asyncio.gather(*(run(manager, backend="parallel") for _ in range(5)))

    assert call_log.max_active > 1
    assert call_log.loads == 1
    assert manager.status("parallel", "en") == BackendStatus.READY


@pytest.mark.asyncio
async def test_status_while_processing(manager, call_log):
    call_log.process_delay = 0.05
    task = asyncio.ensure_future(run(manager))
    await asyncio.sleep(0.02)
    assert manager.status("fake", "en") == BackendStatus.PROCESSING
    await task
    assert manager.status("fake", "en") == BackendStatus.READY


@pytest.mark.asyncio
async def test_initialization_failure_shared_and_retried(manager, call_log):
    call_log.fail_load.add("fr")
    call_log.load_delay = 0.02

    results = await asyncio.gather(*(run(manager, "fr") for _ in range(3)), return_exceptions=True)

    assert all(isinstance(r, BackendInitError) for r in results)
    assert results[0].backend == "fake"
    assert results[0].language == Language.FRENCH
    assert isinstance(results[0].original_error, RuntimeError)
    assert call_log.loads == 1
    # The partially loaded instance is released
    assert call_log.count("unload", "fr") == 1
    assert manager.status("fake", "fr") == BackendStatus.UNLOADED

    # Other languages are unaffected
    await run(manager, "en")

    call_log.fail_load.clear()
    await run(manager, "fr")
    assert call_log.count("load", "fr") == 2
    assert manager.status("fake", "fr") == BackendStatus.READY


@pytest.mark.asyncio
async def test_processing_error_is_wrapped(manager, call_log):
    call_log.fail_process = ValueError("bad input")

    with pytest.raises(BackendProcessError) as exc_info:
        await run(manager)

    assert isinstance(exc_info.value.original_error, ValueError)
    assert exc_info.value.corrupted is False
    # Instance stays usable
    assert manager.status("fake", "en") == BackendStatus.READY

    call_log.fail_process = None
    await run(manager)
    assert call_log.loads == 1


@pytest.mark.asyncio
async def test_invalid_output_is_processing_error(registry, call_log):
    registry.register("broken", NotAnOutputBackend, config={"log": call_log})
    manager = PipelineLifecycleManager(registry)

    with pytest.raises(BackendProcessError):
        await run(manager, backend="broken")
    assert manager.status("broken", "en") == BackendStatus.READY


@pytest.mark.asyncio
async def test_corrupting_error_evicts_instance(registry, call_log):
    registry.register("corrupting", CorruptingBackend, config={"log": call_log})
    manager = PipelineLifecycleManager(registry)

    with pytest.raises(BackendProcessError) as exc_info:
        await run(manager, backend="corrupting")
    assert exc_info.value.corrupted is True
    assert exc_info.value.backend == "corrupting"
    assert manager.status("corrupting", "en") == BackendStatus.TERMINATED
    assert call_log.unloads == 1

    with pytest.raises(BackendProcessError):
        await run(manager, backend="corrupting")
    assert call_log.loads == 2


@pytest.mark.asyncio
async def test_deadline_while_waiting_for_initialization(manager, call_log):
    call_log.load_delay = 0.3
    deadline = asyncio.get_running_loop().time() + 0.05

    with pytest.raises(PipelineTimeoutError) as exc_info:
        await run(manager, deadline=deadline)
    assert exc_info.value.backend == "fake"

    # Initialization carries on and is reused
    assert manager.status("fake", "en") == BackendStatus.INITIALIZING
    await manager.initialize("fake", "en")
    assert manager.status("fake", "en") == BackendStatus.READY
    assert call_log.loads == 1


@pytest.mark.asyncio
async def test_deadline_while_waiting_for_exclusive_access(manager, call_log):
    await run(manager)
    call_log.process_delay = 0.3
    busy = asyncio.ensure_future(run(manager))
    await asyncio.sleep(0.01)

    deadline = asyncio.get_running_loop().time() + 0.05
    with pytest.raises(PipelineTimeoutError):
        await run(manager, deadline=deadline)

    await busy
    call_log.process_delay = 0
    await run(manager)
    # The timed out request never reached the backend
    assert call_log.processed == 3


@pytest.mark.asyncio
async def test_cancelled_request_releases_backend(manager, call_log):
    await run(manager)
    call_log.process_delay = 0.1
    task = asyncio.ensure_future(run(manager))
    await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    call_log.process_delay = 0
    await asyncio.wait_for(run(manager), 1.0)
    # The abandoned call still completed
    assert call_log.processed == 3
    assert manager.status("fake", "en") == BackendStatus.READY


@pytest.mark.asyncio
async def test_uncached_backend_gets_fresh_instance_per_request(registry, call_log):
    registry.register("uncached", FakeBackend, config={"log": call_log}, caching=False)
    manager = PipelineLifecycleManager(registry)

    await run(manager, backend="uncached")
    await run(manager, backend="uncached")

    assert call_log.instances == 2
    assert call_log.loads == 2
    assert call_log.unloads == 2
    assert manager.status("uncached", "en") == BackendStatus.UNLOADED


@pytest.mark.asyncio
async def test_uncached_failure_still_releases(registry, call_log):
    registry.register("uncached", FakeBackend, config={"log": call_log}, caching=False)
    manager = PipelineLifecycleManager(registry)
    call_log.fail_process = RuntimeError("boom")

    with pytest.raises(BackendProcessError):
        await run(manager, backend="uncached")
    assert call_log.unloads == 1


@pytest.mark.asyncio
async def test_terminate_then_reinitialize(manager, call_log):
    await run(manager)
    await manager.terminate("fake", "en")

    assert manager.status("fake", "en") == BackendStatus.TERMINATED
    assert call_log.unloads == 1

    await manager.terminate("fake", "en")
    assert call_log.unloads == 1

    await run(manager)
    assert call_log.loads == 2
    assert manager.status("fake", "en") == BackendStatus.READY


@pytest.mark.asyncio
async def test_terminate_unknown_pair_is_noop(manager, call_log):
    await manager.terminate("fake", "de")
    assert call_log.unloads == 0


@pytest.mark.asyncio
async def test_shutdown_all_releases_every_instance(manager, call_log):
    await asyncio.gather(run(manager, "en"), run(manager, "fr"))

    await manager.shutdown_all()

    assert manager.closed
    assert call_log.count("unload", "en") == 1
    assert call_log.count("unload", "fr") == 1
    assert manager.status("fake", "en") == BackendStatus.TERMINATED

    with pytest.raises(PipelineShutdownError):
        await run(manager)
    with pytest.raises(PipelineShutdownError):
        await manager.initialize("fake", "en")

    await manager.shutdown_all()
    assert call_log.unloads == 2


@pytest.mark.asyncio
async def test_shutdown_waits_for_in_flight_work(manager, call_log):
    await run(manager)
    call_log.process_delay = 0.05
    in_flight = asyncio.ensure_future(run(manager))
    await asyncio.sleep(0.01)

    await manager.shutdown_all()

    result = await in_flight
    assert result.output.annotations
    last_processed = max(i for i, event in enumerate(call_log.events) if event == ("processed", "en"))
    assert last_processed < call_log.events.index(("unload", "en"))


@pytest.mark.asyncio
async def test_shutdown_waits_for_pending_initialization(manager, call_log):
    call_log.load_delay = 0.05
    pending = asyncio.ensure_future(manager.initialize("fake", "en"))
    await asyncio.sleep(0.01)

    await manager.shutdown_all()

    # The waiter either saw the instance ready or the shutdown that followed
    outcome, = await asyncio.gather(pending, return_exceptions=True)
    assert outcome == BackendStatus.READY or isinstance(outcome, PipelineShutdownError)
    assert call_log.loads == 1
    assert call_log.unloads == 1


@pytest.mark.asyncio
async def test_shutdown_survives_failing_terminate(manager, call_log):
    await asyncio.gather(run(manager, "en"), run(manager, "fr"))
    call_log.fail_unload.add("en")

    await manager.shutdown_all()

    assert call_log.count("unload", "en") == 1
    assert call_log.count("unload", "fr") == 1


@pytest.mark.asyncio
async def test_shutdown_waits_for_concurrent_terminate(manager, call_log):
    await run(manager)
    call_log.unload_delay = 0.05

    terminating = asyncio.ensure_future(manager.terminate("fake", "en"))
    await asyncio.sleep(0)
    await manager.shutdown_all()

    assert call_log.unloads == 1
    assert call_log.count("unloaded", "en") == 1
    await terminating


@pytest.mark.asyncio
async def test_second_terminate_waits_for_release(manager, call_log):
    await run(manager)
    call_log.unload_delay = 0.05

    first = asyncio.ensure_future(manager.terminate("fake", "en"))
    await asyncio.sleep(0)
    await manager.terminate("fake", "en")

    assert call_log.count("unloaded", "en") == 1
    await first
    assert call_log.unloads == 1


@pytest.mark.asyncio
async def test_shutdown_releases_abandoned_uncached_instance(registry, call_log):
    registry.register("uncached", FakeBackend, config={"log": call_log}, caching=False)
    manager = PipelineLifecycleManager(registry)
    call_log.load_delay = 0.1
    deadline = asyncio.get_running_loop().time() + 0.01

    with pytest.raises(PipelineTimeoutError):
        await run(manager, backend="uncached", deadline=deadline)
    await manager.shutdown_all()

    assert call_log.loads == 1
    assert call_log.count("unloaded", "en") == 1


@pytest.mark.asyncio
async def test_stats(manager):
    await run(manager)
    stats = manager.stats()
    assert stats["ready"] == 1
    assert stats["pairs"][0]["backend"] == "fake"
    assert stats["pairs"][0]["status"] == "ready"
    assert stats["pairs"][0]["processed"] == 1


@pytest.mark.asyncio
async def test_backend_rejects_process_before_initialize():
    backend = FakeBackend()
    await backend.terminate(Language.ENGLISH)
    assert backend.log.unloads == 0
    with pytest.raises(BackendNotReadyError):
        await backend.process(TEXT, Language.ENGLISH, STAGES, CATEGORIES)

    await backend.initialize(Language.ENGLISH)
    await backend.initialize(Language.ENGLISH)
    assert backend.log.loads == 1
    assert backend.is_ready(Language.ENGLISH)

    await backend.terminate(Language.ENGLISH)
    await backend.terminate(Language.ENGLISH)
    assert backend.log.unloads == 1
    assert backend.ready_languages == frozenset()
