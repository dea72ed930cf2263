"""Engine adapter registry.

Maps backend names to their corresponding adapter classes.
"""

from typing import Type

from .adapters.base import BaseAdapter
from .adapters.hf import TransformersAdapter
from .adapters.llamacpp import LlamaCppAdapter
from .errors import UnknownBackendError

DEFAULT_BACKEND = "llama_cpp"

# Registry mapping backend names to adapter classes
_ADAPTER_REGISTRY: dict[str, Type[BaseAdapter]] = {
    "llama_cpp": LlamaCppAdapter,
    "transformers": TransformersAdapter,
}


def get_adapter(backend: str = DEFAULT_BACKEND) -> BaseAdapter:
    """
    Get an adapter instance for the given backend.

    Args:
        backend: Name of the backend (e.g., "llama_cpp").

    Returns:
        An adapter instance for the backend.

    Raises:
        UnknownBackendError: If the backend is not registered.
    """
    if backend not in _ADAPTER_REGISTRY:
        raise UnknownBackendError(backend, list(_ADAPTER_REGISTRY.keys()))
    return _ADAPTER_REGISTRY[backend]()


def register_adapter(backend: str, adapter_cls: Type[BaseAdapter]) -> None:
    """
    Register a new adapter for a backend.

    Args:
        backend: Name of the backend.
        adapter_cls: Adapter class (must inherit from BaseAdapter).
    """
    if not issubclass(adapter_cls, BaseAdapter):
        raise TypeError(f"{adapter_cls!r} must inherit from BaseAdapter")
    _ADAPTER_REGISTRY[backend] = adapter_cls


def list_backends() -> list[str]:
    """Return list of registered backend names."""
    return list(_ADAPTER_REGISTRY.keys())
