"""morphos — a self-modifying orchestration loop that evolves its own codebase safely."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("morphos")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
