"""wharf — run arbitrary git projects as supervised local servers."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("wharf")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
