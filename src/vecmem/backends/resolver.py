"""
Backend detection and resolution.

Backends are registered as named factories. Detection probes whether each
factory's modules are importable without importing or initializing them;
resolution walks the candidates in priority order and returns the first
backend that both constructs and initializes.

Priority for ``auto``:
    faiss > sqlite-vec > sqlite (always available) > hnswlib
"""
from __future__ import annotations

import importlib
import importlib.util
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ..errors import BackendUnavailableError, ConfigurationError, MissingDependencyError
from .base import BackendConfig, VectorBackend

logger = logging.getLogger(__name__)

Probe = Callable[[str], bool]

# Modules whose presence enables the learned query enhancer
LEARNING_MODULES = ("torch",)


@dataclass(frozen=True)
class BackendDetection:
    """Capability report for one backend, computed once per resolution."""
    name: str
    family: str
    available: bool
    native: bool
    learning: bool
    missing: tuple[str, ...] = ()


@dataclass(frozen=True)
class Attempt:
    name: str
    stage: str  # unavailable | construct | initialize
    reason: str


@dataclass(frozen=True)
class Resolution:
    backend: VectorBackend
    name: str
    detections: tuple[BackendDetection, ...]
    attempts: tuple[Attempt, ...]

    @property
    def fell_back(self) -> bool:
        return bool(self.attempts)


@dataclass(frozen=True)
class BackendFactory:
    name: str
    family: str
    requires: tuple[str, ...]
    native: bool
    install_hint: str
    create: Callable[[BackendConfig], VectorBackend]


def module_available(module: str) -> bool:
    """True when ``module`` can be imported. Does not import it."""
    try:
        return importlib.util.find_spec(module) is not None
    except (ImportError, ValueError):
        return False


def _lazy(module: str, attr: str) -> Callable[[BackendConfig], VectorBackend]:
    def create(config: BackendConfig) -> VectorBackend:
        cls = getattr(importlib.import_module(module, __package__), attr)
        return cls(config)
    return create


def default_factories() -> list[BackendFactory]:
    return [
        BackendFactory(
            name="faiss",
            family="faiss",
            requires=("numpy", "faiss"),
            native=True,
            install_hint="pip install faiss-cpu",
            create=_lazy(".faiss_store", "FaissBackend"),
        ),
        BackendFactory(
            name="sqlite-vec",
            family="single-file",
            requires=("numpy", "sqlite_vec"),
            native=True,
            install_hint="pip install sqlite-vec",
            create=_lazy(".sqlite", "SqliteVecBackend"),
        ),
        BackendFactory(
            name="sqlite",
            family="single-file",
            requires=("numpy",),
            native=False,
            install_hint="pip install numpy",
            create=_lazy(".sqlite", "SqliteBackend"),
        ),
        BackendFactory(
            name="hnswlib",
            family="hnswlib",
            requires=("numpy", "hnswlib"),
            native=True,
            install_hint="pip install hnswlib",
            create=_lazy(".hnsw", "HnswBackend"),
        ),
    ]


class BackendRegistry:
    """Ordered registry of backend factories (first = highest priority)."""

    def __init__(self, factories: Optional[Iterable[BackendFactory]] = None):
        self._factories: list[BackendFactory] = list(
            default_factories() if factories is None else factories
        )

    def register(self, factory: BackendFactory, before: Optional[str] = None):
        if any(f.name == factory.name for f in self._factories):
            raise ConfigurationError(f"Backend {factory.name!r} is already registered")
        if before is None:
            self._factories.append(factory)
            return
        names = [f.name for f in self._factories]
        self._factories.insert(names.index(before), factory)

    @property
    def names(self) -> list[str]:
        return [f.name for f in self._factories]

    def candidates(self, choice: str = "auto") -> list[BackendFactory]:
        if choice == "auto":
            return list(self._factories)
        by_name = [f for f in self._factories if f.name == choice]
        if by_name:
            return by_name
        by_family = [f for f in self._factories if f.family == choice]
        if by_family:
            return by_family
        raise ConfigurationError(
            f"Unknown backend {choice!r}. Choose 'auto' or one of: {', '.join(self.names)}"
        )

    def detect(self, probe: Optional[Probe] = None) -> tuple[BackendDetection, ...]:
        """Probe every registered backend without initializing any of them."""
        probe = probe or module_available
        learning = all(probe(m) for m in LEARNING_MODULES)
        detections = []
        for factory in self._factories:
            missing = tuple(m for m in factory.requires if not probe(m))
            detections.append(BackendDetection(
                name=factory.name,
                family=factory.family,
                available=not missing,
                native=factory.native and not missing,
                learning=learning,
                missing=missing,
            ))
        return tuple(detections)

    def resolve(
        self,
        choice: str = "auto",
        config: Optional[BackendConfig] = None,
        probe: Optional[Probe] = None,
    ) -> Resolution:
        """
        Build and initialize a backend.

        Args:
            choice: 'auto', a backend name, or a family name
            config: Shared backend configuration
            probe: Module availability check (defaults to find_spec)

        Returns:
            Resolution with the initialized backend and every failed attempt

        Raises:
            MissingDependencyError: explicit choice whose dependencies are absent
            BackendUnavailableError: no candidate could be initialized
        """
        config = config or BackendConfig()
        candidates = self.candidates(choice)
        detections = self.detect(probe)
        by_name = {d.name: d for d in detections}
        explicit = choice != "auto"

        if explicit and not any(by_name[f.name].available for f in candidates):
            first = candidates[0]
            missing = ", ".join(by_name[first.name].missing)
            raise MissingDependencyError(
                f"Backend {choice!r} is not available (missing: {missing})", first.install_hint
            )

        attempts: list[Attempt] = []
        for factory in candidates:
            detection = by_name[factory.name]
            if not detection.available:
                reason = f"missing {', '.join(detection.missing)} ({factory.install_hint})"
                logger.debug(f"Backend {factory.name} unavailable: {reason}")
                attempts.append(Attempt(factory.name, "unavailable", reason))
                continue

            try:
                backend = factory.create(config)
            except Exception as e:
                logger.debug(f"Backend {factory.name} could not be constructed: {e}")
                attempts.append(Attempt(factory.name, "construct", str(e)))
                continue

            try:
                backend.initialize()
            except Exception as e:
                logger.warning(f"Backend {factory.name} failed to initialize: {e}")
                attempts.append(Attempt(factory.name, "initialize", str(e)))
                backend.close()
                continue

            if attempts:
                skipped = ", ".join(a.name for a in attempts)
                logger.warning(f"Falling back to {factory.name} backend (unusable: {skipped})")
            else:
                logger.info(f"✓ Using {factory.name} backend")
            return Resolution(backend, factory.name, detections, tuple(attempts))

        raise BackendUnavailableError(attempts)


def detect_backends(probe: Optional[Probe] = None, registry: Optional[BackendRegistry] = None):
    return (registry or BackendRegistry()).detect(probe)


def resolve_backend(
    choice: str = "auto",
    config: Optional[BackendConfig] = None,
    probe: Optional[Probe] = None,
    registry: Optional[BackendRegistry] = None,
) -> Resolution:
    """Resolve a backend using the default registry unless one is given."""
    return (registry or BackendRegistry()).resolve(choice, config, probe)
