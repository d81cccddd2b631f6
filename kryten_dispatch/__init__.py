"""kryten-dispatch — Multi-platform chat command dispatch microservice."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kryten-dispatch")
except PackageNotFoundError:
    __version__ = "0.0.0"
