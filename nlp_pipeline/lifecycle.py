"""
Per (backend, language) lifecycle management

The manager is the only owner of backend instances. For every (backend,
language) pair it keeps a BackendState moving through

    UNLOADED -> INITIALIZING -> READY <-> PROCESSING -> TERMINATED

Concurrent first requests share one initialization task. Backends that are
not concurrency-safe get their process() calls serialized per pair through an
asyncio.Lock, whose waiters are served in arrival order. A dispatched
process() call runs in its own task: a cancelled caller stops waiting for it,
but the call still completes and releases the pair.

Nothing is released implicitly. Cached instances live until terminate() or
shutdown_all(); with caching disabled every request initializes a fresh
instance and terminates it once its single process() call is over.
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Sequence, Set, Tuple

from nlp_pipeline.annotation import EntityCategory
from nlp_pipeline.base import BackendOutput, NlpBackend
from nlp_pipeline.exceptions import (
    BackendInitError,
    BackendNotReadyError,
    BackendProcessError,
    PipelineShutdownError,
    PipelineTimeoutError,
    wrap_backend_error,
)
from nlp_pipeline.language import Language
from nlp_pipeline.registry import BackendRegistration, BackendRegistry
from nlp_pipeline.stages import NlpStage
from logger import get_logger
from metrics import record_initialization, record_processing, set_ready_backends

logger = get_logger(__name__)


class BackendStatus(Enum):
    """Lifecycle status of one (backend, language) pair"""
    UNLOADED = "unloaded"
    INITIALIZING = "initializing"
    READY = "ready"
    PROCESSING = "processing"
    TERMINATED = "terminated"


class BackendStateMachine:
    """Validates backend status transitions"""

    VALID_TRANSITIONS = {
        BackendStatus.UNLOADED: {BackendStatus.INITIALIZING},
        BackendStatus.INITIALIZING: {BackendStatus.READY, BackendStatus.UNLOADED},
        BackendStatus.READY: {BackendStatus.PROCESSING, BackendStatus.TERMINATED},
        BackendStatus.PROCESSING: {BackendStatus.READY, BackendStatus.TERMINATED},
        BackendStatus.TERMINATED: {BackendStatus.INITIALIZING},
    }

    @classmethod
    def is_valid_transition(cls, from_status: BackendStatus, to_status: BackendStatus) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, set())

    @classmethod
    def is_loaded(cls, status: BackendStatus) -> bool:
        """Check if a status has a usable backend instance attached"""
        return status in {BackendStatus.READY, BackendStatus.PROCESSING}


@dataclass
class DispatchResult:
    """Output of one process() call plus what the caller needs to normalize it"""
    output: BackendOutput
    pos_tagset: Optional[str]
    duration: float


class _InstanceSlot:
    """One initialized backend instance and the calls in flight on it"""

    def __init__(self, backend: NlpBackend):
        self.backend = backend
        self.active = 0
        self.idle = asyncio.Event()
        self.idle.set()
        self.detached = False
        self.release_task: Optional[asyncio.Task] = None


class BackendState:
    """Mutable state of one (backend, language) pair, owned by the manager"""

    def __init__(self, registration: BackendRegistration, language: Language, transient: bool = False):
        self.registration = registration
        self.language = language
        self.transient = transient
        self.status = BackendStatus.UNLOADED
        self.slot: Optional[_InstanceSlot] = None
        self.detached_slot: Optional[_InstanceSlot] = None
        self.init_task: Optional[asyncio.Task] = None
        self.lock = asyncio.Lock()
        self.initializations = 0
        self.processed = 0
        self.failures = 0
        self.ready_since: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.registration.name

    def transition(self, to_status: BackendStatus):
        if not BackendStateMachine.is_valid_transition(self.status, to_status):
            raise RuntimeError(
                f"Invalid transition {self.status.value} -> {to_status.value} "
                f"for {self.name}/{self.language.value}"
            )
        logger.debug(f"{self.name}/{self.language.value}: {self.status.value} -> {to_status.value}")
        self.status = to_status
        if to_status == BackendStatus.READY and self.ready_since is None:
            self.ready_since = datetime.now()
        elif not BackendStateMachine.is_loaded(to_status):
            self.ready_since = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backend": self.name,
            "language": self.language.value,
            "status": self.status.value,
            "active": self.slot.active if self.slot else 0,
            "initializations": self.initializations,
            "processed": self.processed,
            "failures": self.failures,
            "ready_since": self.ready_since.isoformat() if self.ready_since else None,
        }


def _consume_result(task: asyncio.Task):
    # Mark the outcome retrieved; waiters get it through shield()
    if not task.cancelled():
        task.exception()


class PipelineLifecycleManager:
    """Owns every backend instance and drives the per-pair state machine"""

    def __init__(self, registry: BackendRegistry):
        self.registry = registry
        self._states: Dict[Tuple[str, Language], BackendState] = {}
        self._background: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def status(self, backend: str, language) -> BackendStatus:
        state = self._states.get((backend, Language.parse(language)))
        return state.status if state else BackendStatus.UNLOADED

    def stats(self) -> Dict[str, Any]:
        return {
            "closed": self._closed,
            "ready": self._ready_count(),
            "pairs": [state.to_dict() for state in self._states.values()],
        }

    def _ready_count(self) -> int:
        return sum(1 for state in self._states.values() if state.slot is not None)

    def _check_open(self, backend: Optional[str] = None, language=None):
        if self._closed:
            raise PipelineShutdownError("Pipeline has been shut down", backend=backend, language=language)

    def _state_for(self, registration: BackendRegistration, language: Language) -> BackendState:
        key = (registration.name, language)
        state = self._states.get(key)
        if state is None:
            state = BackendState(registration, language)
            self._states[key] = state
        return state

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_consume_result)
        return task

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - asyncio.get_running_loop().time())

    async def _wait(self, awaitable, deadline: Optional[float], state: BackendState, what: str):
        try:
            return await asyncio.wait_for(awaitable, self._remaining(deadline))
        except asyncio.TimeoutError:
            raise PipelineTimeoutError(
                f"Deadline exceeded waiting for {what}",
                backend=state.name,
                language=state.language
            )

    # Public operations

    async def process(self, backend: str, language, text: str, stages: Sequence[NlpStage],
                      categories: FrozenSet[EntityCategory],
                      deadline: Optional[float] = None) -> DispatchResult:
        """
        Run one document through a backend, initializing it if needed

        Args:
            deadline: event loop time after which waiting for initialization
                or exclusive access raises PipelineTimeoutError

        Raises:
            BackendInitError, BackendProcessError, PipelineTimeoutError,
            PipelineShutdownError
        """
        language = Language.parse(language)
        registration = self.registry.get(backend)
        self._check_open(backend, language)

        if not registration.caching:
            return await self._process_uncached(registration, language, text, stages, categories, deadline)

        state = self._state_for(registration, language)
        while True:
            await self._ensure_ready(state, deadline)
            if registration.concurrency_safe:
                return await self._dispatch(state, state.slot, text, stages, categories)

            await self._wait(state.lock.acquire(), deadline, state, "exclusive backend access")
            if state.slot is None:
                # Terminated while this request was queued
                state.lock.release()
                continue
            return await self._dispatch(state, state.slot, text, stages, categories, release_lock=True)

    async def initialize(self, backend: str, language, deadline: Optional[float] = None) -> BackendStatus:
        """Eagerly bring a cached (backend, language) pair to READY"""
        language = Language.parse(language)
        registration = self.registry.get(backend)
        self._check_open(backend, language)
        state = self._state_for(registration, language)
        await self._ensure_ready(state, deadline)
        return state.status

    async def terminate(self, backend: str, language) -> None:
        """Release a cached pair once in-flight work is done; no-op when not loaded"""
        state = self._states.get((backend, Language.parse(language)))
        if state is None:
            return
        await self._terminate_state(state)

    async def shutdown_all(self) -> None:
        """
        Terminate every cached backend instance

        Best effort: a failing adapter is logged and the others are still
        terminated. Requests submitted afterwards raise PipelineShutdownError.
        """
        self._closed = True
        states = list(self._states.values())
        results = await asyncio.gather(
            *(self._terminate_state(state) for state in states),
            return_exceptions=True
        )
        for state, result in zip(states, results):
            if isinstance(result, Exception):
                logger.error(f"Error terminating {state.name}/{state.language.value}: {result}")

        # Releases may spawn further releases while draining
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

        set_ready_backends(self._ready_count())
        logger.info(f"Lifecycle manager shut down ({len(states)} backend/language pairs)")

    # Initialization

    async def _ensure_ready(self, state: BackendState, deadline: Optional[float]):
        while not BackendStateMachine.is_loaded(state.status):
            self._check_open(state.name, state.language)
            if state.init_task is None:
                state.transition(BackendStatus.INITIALIZING)
                state.init_task = self._spawn(self._initialize(state))
            await self._wait(asyncio.shield(state.init_task), deadline, state, "backend initialization")

    async def _initialize(self, state: BackendState):
        language = state.language
        backend = None
        state.initializations += 1
        logger.info(f"Initializing {state.name} for {language.value}")
        try:
            backend = state.registration.create()
            await backend.initialize(language)
        except Exception as e:
            if backend is not None:
                await self._terminate_instance(state.name, language, backend)
            state.init_task = None
            state.transition(BackendStatus.UNLOADED)
            record_initialization(state.name, language.value, "failure")
            logger.error(f"Failed to initialize {state.name} for {language.value}: {e}")
            raise wrap_backend_error(e, BackendInitError, backend=state.name, language=language) from e

        state.slot = _InstanceSlot(backend)
        state.init_task = None
        state.transition(BackendStatus.READY)
        record_initialization(state.name, language.value, "success")
        if not state.transient:
            set_ready_backends(self._ready_count())
        logger.info(f"Initialized {state.name} for {language.value}")

    # Processing

    async def _dispatch(self, state: BackendState, slot: _InstanceSlot, text: str,
                        stages: Sequence[NlpStage], categories: FrozenSet[EntityCategory],
                        release_lock: bool = False, terminate_after: bool = False) -> DispatchResult:
        slot.active += 1
        slot.idle.clear()
        if state.slot is slot and state.status == BackendStatus.READY:
            state.transition(BackendStatus.PROCESSING)

        task = self._spawn(
            self._run_process(state, slot, text, stages, categories, release_lock, terminate_after)
        )
        return await asyncio.shield(task)

    async def _run_process(self, state: BackendState, slot: _InstanceSlot, text: str,
                           stages: Sequence[NlpStage], categories: FrozenSet[EntityCategory],
                           release_lock: bool, terminate_after: bool) -> DispatchResult:
        language = state.language
        evict = False
        start = time.time()
        try:
            output = await slot.backend.process(text, language, tuple(stages), frozenset(categories))
            if not isinstance(output, BackendOutput):
                raise BackendProcessError(
                    f"process() returned {type(output).__name__}, expected BackendOutput",
                    backend=state.name,
                    language=language
                )
            duration = time.time() - start
            state.processed += 1
            record_processing(state.name, language.value, duration)
            return DispatchResult(output=output, pos_tagset=slot.backend.pos_tagset(language), duration=duration)
        except BackendNotReadyError:
            state.failures += 1
            raise
        except Exception as e:
            state.failures += 1
            error = wrap_backend_error(e, BackendProcessError, backend=state.name, language=language)
            evict = error.corrupted
            logger.error(f"{state.name} failed processing {language.value} document: {error}")
            if error is e:
                raise
            raise error from e
        finally:
            slot.active -= 1
            if slot.active == 0:
                slot.idle.set()
            if state.slot is slot:
                if evict or terminate_after:
                    self._detach(state)
                elif slot.active == 0 and state.status == BackendStatus.PROCESSING:
                    state.transition(BackendStatus.READY)
            if release_lock:
                state.lock.release()
            if slot.detached and slot.active == 0:
                if evict:
                    logger.warning(f"Evicting {state.name}/{language.value} after corrupting failure")
                await self._release(state, slot)

    async def _process_uncached(self, registration: BackendRegistration, language: Language, text: str,
                                stages: Sequence[NlpStage], categories: FrozenSet[EntityCategory],
                                deadline: Optional[float]) -> DispatchResult:
        state = BackendState(registration, language, transient=True)
        try:
            await self._ensure_ready(state, deadline)
        except BaseException:
            # Waiting stopped early while the load goes on
            if state.init_task is not None:
                self._spawn(self._discard_after_init(state, state.init_task))
            raise
        return await self._dispatch(state, state.slot, text, stages, categories, terminate_after=True)

    # Termination

    def _detach(self, state: BackendState):
        slot = state.slot
        state.slot = None
        slot.detached = True
        state.detached_slot = slot
        state.transition(BackendStatus.TERMINATED)
        if not state.transient:
            set_ready_backends(self._ready_count())

    async def _discard_after_init(self, state: BackendState, init_task: asyncio.Task):
        await asyncio.wait({init_task})
        slot = state.slot
        if slot is not None:
            self._detach(state)
            await self._release(state, slot)

    async def _terminate_state(self, state: BackendState):
        if state.init_task is not None:
            await asyncio.wait({state.init_task})
        slot = state.slot
        if slot is not None:
            self._detach(state)
        else:
            # Already detached, possibly still releasing
            slot = state.detached_slot
            if slot is None:
                return
        await slot.idle.wait()
        await self._release(state, slot)

    async def _release(self, state: BackendState, slot: _InstanceSlot):
        if slot.release_task is None:
            slot.release_task = self._spawn(
                self._terminate_instance(state.name, state.language, slot.backend)
            )
        await asyncio.shield(slot.release_task)

    @staticmethod
    async def _terminate_instance(name: str, language: Language, backend: NlpBackend):
        try:
            await backend.terminate(language)
            logger.info(f"Terminated {name} for {language.value}")
        except Exception as e:
            logger.error(f"Error terminating {name} for {language.value}: {e}")
