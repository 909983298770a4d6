"""nameofgen - nameof accessor generator for non-accessible C# members."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("nameofgen")
except PackageNotFoundError:
    __version__ = "(local)"
