"""vibe-lottery: ad-funded weekly lottery rewards and a chip casino."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vibe-lottery")
except PackageNotFoundError:
    __version__ = "0.0.0"
