"""trackline: a local, git-friendly issue tracker."""

__version__ = "0.1.0"
