"""
Backend registry

Registration is the only point where backend capabilities are read: the
support matrix, stage graph and category table are built here once and never
change afterwards.
"""
import importlib
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Type, Union

import yaml

from nlp_pipeline.annotation import EntityCategory
from nlp_pipeline.base import NlpBackend, OffsetUnit
from nlp_pipeline.exceptions import ConfigurationError, UnsupportedLanguageOrStageError
from nlp_pipeline.language import LanguageSupportMatrix
from nlp_pipeline.stages import StageDependencyGraph
from config import settings
from logger import get_logger

logger = get_logger(__name__)

BUILTIN_BACKENDS = {
    "spacy": "nlp_providers.spacy_local:SpacyBackend",
}


@dataclass(frozen=True)
class BackendRegistration:
    """Immutable capability record of one registered backend"""
    name: str
    backend_class: Type[NlpBackend]
    config: Mapping[str, Any]
    support_matrix: LanguageSupportMatrix
    stage_graph: StageDependencyGraph
    category_labels: Mapping[str, EntityCategory]
    concurrency_safe: bool
    offset_unit: OffsetUnit
    caching: bool

    def create(self) -> NlpBackend:
        """Create a fresh, uninitialized backend instance"""
        return self.backend_class(dict(self.config))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "class": f"{self.backend_class.__module__}:{self.backend_class.__qualname__}",
            "languages": self.support_matrix.to_dict(),
            "stage_dependencies": self.stage_graph.to_dict(),
            "categories": sorted({c.value for c in self.category_labels.values()}),
            "concurrency_safe": self.concurrency_safe,
            "caching": self.caching,
        }


def import_backend_class(path: str) -> Type[NlpBackend]:
    """Resolve 'package.module:ClassName' (or dotted 'package.module.ClassName')"""
    module_name, _, class_name = path.partition(":")
    if not class_name:
        module_name, _, class_name = path.rpartition(".")
    if not module_name or not class_name:
        raise ConfigurationError(f"Invalid backend class path: {path!r}")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot import backend class {path!r}: {e}", original_error=e)


class BackendRegistry:
    """Registry for NLP backends"""

    def __init__(self, register_builtins: bool = False):
        self._registrations: Dict[str, BackendRegistration] = {}

        if register_builtins:
            self._register_builtin_backends()

    def _register_builtin_backends(self):
        """Register built-in backends whose engine is importable"""
        for name, path in BUILTIN_BACKENDS.items():
            try:
                backend_class = import_backend_class(path)
            except ConfigurationError as e:
                logger.warning(f"Built-in backend {name} unavailable: {e}")
                continue
            self.register(name, backend_class)

        logger.info(f"Registered {len(self._registrations)} built-in backends")

    def register(self, name: str, backend_class: Type[NlpBackend],
                 config: Optional[Dict[str, Any]] = None,
                 caching: Optional[bool] = None) -> BackendRegistration:
        """
        Register a backend under a unique name

        Raises:
            ConfigurationError: duplicate name, class not an NlpBackend, or
                invalid capability declarations (e.g. cyclic stage dependencies)
        """
        if not name:
            raise ConfigurationError("Backend name is required")
        if name in self._registrations:
            raise ConfigurationError(f"Backend '{name}' already registered", backend=name)
        if not isinstance(backend_class, type) or not issubclass(backend_class, NlpBackend):
            raise ConfigurationError(f"{backend_class!r} must inherit from NlpBackend", backend=name)

        try:
            support_matrix = backend_class.support_matrix()
            stage_graph = StageDependencyGraph(backend_class.stage_dependencies())
            category_labels = MappingProxyType({
                str(label): EntityCategory.parse(category)
                for label, category in backend_class.category_labels().items()
            })
        except ConfigurationError as e:
            e.backend = name
            raise
        except ValueError as e:
            raise ConfigurationError(f"Invalid capability declaration: {e}", backend=name, original_error=e)

        registration = BackendRegistration(
            name=name,
            backend_class=backend_class,
            config=MappingProxyType(dict(config or {})),
            support_matrix=support_matrix,
            stage_graph=stage_graph,
            category_labels=category_labels,
            concurrency_safe=bool(backend_class.CONCURRENCY_SAFE),
            offset_unit=backend_class.OFFSET_UNIT,
            caching=settings.get('nlp_caching', True) if caching is None else bool(caching),
        )
        self._registrations[name] = registration
        logger.info(f"Registered backend: {name} (languages: {sorted(l.value for l in support_matrix)})")
        return registration

    def load_from_yaml(self, config_path: Union[str, Path]) -> List[BackendRegistration]:
        """
        Register backends listed in a YAML file

        Expected layout:

            backends:
              spacy:
                class: nlp_providers.spacy_local:SpacyBackend
                caching: true
                config:
                  models: {en: en_core_web_sm}
        """
        try:
            with open(config_path, 'r') as f:
                config_dict = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read backend configuration {config_path}: {e}", original_error=e)

        backends = config_dict.get('backends') if isinstance(config_dict, dict) else None
        if not isinstance(backends, dict):
            raise ConfigurationError(f"{config_path}: expected a 'backends' mapping")

        registrations = []
        for name, entry in backends.items():
            entry = entry or {}
            if not isinstance(entry, dict) or 'class' not in entry:
                raise ConfigurationError(f"{config_path}: backend '{name}' needs a 'class' entry", backend=name)
            if not entry.get('enabled', True):
                logger.info(f"Skipping disabled backend: {name}")
                continue
            registrations.append(self.register(
                name,
                import_backend_class(entry['class']),
                config=entry.get('config') or {},
                caching=entry.get('caching'),
            ))
        return registrations

    def get(self, name: str) -> BackendRegistration:
        """Get a registration by name"""
        try:
            return self._registrations[name]
        except KeyError:
            raise UnsupportedLanguageOrStageError(f"Backend '{name}' not registered", backend=name)

    def list_backends(self) -> List[str]:
        """List all registered backend names, in registration order"""
        return list(self._registrations)

    def registrations(self) -> List[BackendRegistration]:
        return list(self._registrations.values())

    def __contains__(self, name: str) -> bool:
        return name in self._registrations

    def __len__(self) -> int:
        return len(self._registrations)


# Global registry instance
_registry = None


def get_registry() -> BackendRegistry:
    """Get the global backend registry, from the configured YAML file or the built-ins"""
    global _registry
    if _registry is None:
        backends_file = settings.get('nlp_backends_file')
        _registry = BackendRegistry(register_builtins=not backends_file)
        if backends_file:
            _registry.load_from_yaml(backends_file)
    return _registry
