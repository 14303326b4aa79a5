# src/hydroassim/__init__.py
try:
    from .hydroassim_version import __version__
except ImportError:
    try:
        from importlib.metadata import version, PackageNotFoundError
        __version__ = version("hydroassim")
    except (ImportError, PackageNotFoundError):
        __version__ = "0.0.0"

from .data_assimilation import DataAssimilationConfig, DataAssimilationManager

__all__ = ["DataAssimilationConfig", "DataAssimilationManager", "__version__"]
